[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "limacfg"
version = "0.1.0"
description = "Configuration handling for Linux virtual machine instances: defaults, validation, host networks and sudoers rules"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["virtual-machine", "configuration", "yaml", "qemu", "networking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: MacOS",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.setuptools.packages.find]
include = ["limacfg*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
