import archprovision

if __name__ == '__main__':
	archprovision.run_as_a_module()
