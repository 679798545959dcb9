[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "binixsrv"
version = "0.2.31"
description = "Server-side core of a Nix binary cache: manifests, narinfo, local storage, SQLite schema and garbage collection"
requires-python = ">=3.10"
dependencies = []
keywords = ["nix", "binary-cache", "narinfo", "nar", "garbage-collection", "sqlite"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Archiving",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["binixsrv"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
