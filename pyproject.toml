[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "serfkit"
version = "0.1.0"
description = "Building blocks for gossip-based cluster membership: Lamport clocks, msgpack wire messages, events and filtered queries."
requires-python = ">=3.10"
dependencies = [
    "msgpack",
]
keywords = [
    "gossip",
    "cluster",
    "membership",
    "lamport-clock",
    "msgpack",
    "distributed",
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
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["serfkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
