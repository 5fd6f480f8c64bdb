[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "marathon"
version = "0.1.0"
description = "Workers that split push-notification jobs into batches, render templates and hand messages to a push producer"
requires-python = ">=3.10"
keywords = ["push", "notifications", "workers", "redis", "batches", "queue"]
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
    "Topic :: Communications",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["marathon"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
