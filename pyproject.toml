[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tfguardian"
version = "0.1.0"
description = "Pull-request driven Terraform planning, comment housekeeping and IAM cleanup for CI workflows"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "terraform",
    "github-actions",
    "ci",
    "infrastructure-as-code",
    "pull-request",
    "iam",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tfguardian"]

[tool.hatch.build.targets.sdist]
include = ["tfguardian", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
