[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "boltstore"
version = "0.1.0"
description = "An embedded bucket-based key/value object store with JSON records, options and schema migrations"
requires-python = ">=3.10"
dependencies = []
keywords = ["key-value", "embedded database", "buckets", "migrations", "json", "dataclasses"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["boltstore"]

[tool.pytest.ini_options]
addopts = "-ra"
