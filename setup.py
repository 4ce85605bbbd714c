import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

with open('VERSION', 'r') as fh:
    VERSION = fh.read().strip()

setuptools.setup(
    name="archprovision",
    version=VERSION,
    author="archprovision contributors",
    description="Declarative disk provisioning for Arch Linux installations - partitions, LUKS2, btrfs subvolumes and fstab",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Operating System :: POSIX :: Linux",
    ],
    python_requires='>=3.12',
    install_requires=[
        "pydantic>=2.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "archprovision=archprovision:run_as_a_module",
        ],
    },
)
