[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "storagetap"
version = "1.0.0"
description = "Change-stream plumbing: pluggable logging, a resizable worker pool, metrics counters and message pipes backed by in-memory queues or files"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = [
    "change data capture",
    "pipe",
    "producer",
    "consumer",
    "metrics",
    "thread pool",
    "logging",
]
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
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["storagetap"]

[tool.hatch.build.targets.sdist]
include = ["storagetap", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
