from .device import (
	CRYPTO_LUKS,
	FilesystemType,
	FindmntOutput,
	LsblkInfo,
	MountInfo,
	Size,
	Unit,
)
from .plan import (
	BtrfsFeatures,
	CacheDirectory,
	DiskRole,
	DiskSpec,
	EncryptionSpec,
	MountPlanEntry,
	PartitionRole,
	PartitionSpec,
	ProvisionPlan,
	SubvolumeSpec,
)
from .report import Finding, Status, VerificationReport

__all__ = [
	'CRYPTO_LUKS',
	'BtrfsFeatures',
	'CacheDirectory',
	'DiskRole',
	'DiskSpec',
	'EncryptionSpec',
	'FilesystemType',
	'FindmntOutput',
	'Finding',
	'LsblkInfo',
	'MountInfo',
	'MountPlanEntry',
	'PartitionRole',
	'PartitionSpec',
	'ProvisionPlan',
	'Size',
	'Status',
	'SubvolumeSpec',
	'Unit',
	'VerificationReport',
]
