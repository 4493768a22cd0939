[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "raftkv"
version = "0.1.0"
description = "A replicated key-value store built on the Raft consensus algorithm, with its own small RPC layer"
requires-python = ">=3.10"
dependencies = []
keywords = ["raft", "consensus", "key-value", "distributed", "rpc", "replication"]
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
    "Topic :: System :: Distributed Computing",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
raftkv-server = "raftkv.kvserver:main"

[tool.hatch.build.targets.wheel]
packages = ["raftkv"]

[tool.hatch.build.targets.sdist]
include = ["raftkv", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
