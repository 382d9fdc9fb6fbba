[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "imrelay"
version = "0.1.0"
description = "Building blocks for a distributed instant-messaging push service: connection buckets, rooms, load balancing, session mapping and a push API."
requires-python = ">=3.11"
keywords = ["im", "push", "chat", "comet", "redis", "load-balancer", "flask"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "redis",
    "flask",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["imrelay"]

[tool.hatch.build.targets.sdist]
include = ["imrelay", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
