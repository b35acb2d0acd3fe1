[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "contprof"
version = "0.1.0"
description = "Continuous profiling toolkit: scrape configuration, scrape targets and loops, debug info storage and query request validation"
requires-python = ">=3.10"
keywords = ["profiling", "pprof", "monitoring", "scrape", "debuginfo"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["contprof"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
