[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mevrelay"
version = "0.1.0"
description = "Swap-event relay building blocks: typed configuration, metrics, logging, and Redis-backed buffering and publishing"
requires-python = ">=3.11"
keywords = ["mev", "relay", "ethereum", "swaps", "redis", "pubsub", "metrics"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Internet",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "redis>=5.0",
    "tomli-w>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["mevrelay"]

[tool.hatch.build.targets.sdist]
include = ["mevrelay", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
