[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kiwidb"
version = "0.1.0"
description = "Building blocks of a log-structured merge-tree storage engine: a skip-list memtable, sorted string table files, a manifest of levels and a merging iterator."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "lsm-tree",
    "key-value",
    "storage-engine",
    "sstable",
    "skiplist",
    "database",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["kiwidb"]

[tool.hatch.build.targets.sdist]
include = [
    "kiwidb",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
