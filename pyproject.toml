[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nthmonitor"
version = "0.1.0"
description = "Interruption-event monitors for cloud nodes: instance metadata notices and queued EventBridge events turned into drain requests"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "monitoring",
    "interruption",
    "spot",
    "autoscaling",
    "scheduled-maintenance",
    "eventbridge",
    "sqs",
    "node-drain",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nthmonitor"]

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
