[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "raftlite"
version = "0.1.0"
description = "Building blocks for Raft consensus: log stores, snapshots, commit tracking, peer stores and transports"
requires-python = ">=3.10"
keywords = ["raft", "consensus", "replicated-log", "distributed", "snapshot", "msgpack"]
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
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "msgpack",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["raftlite"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
