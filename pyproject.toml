[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "runnerscale"
version = "0.1.0"
description = "Autoscaling logic for self-hosted CI runner fleets: replica computation, scheduled overrides, capacity reservations and webhook-driven scale-up."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "autoscaling",
    "ci",
    "runners",
    "github-actions",
    "webhook",
    "controller",
    "reconciler",
]
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["runnerscale"]

[tool.hatch.build.targets.sdist]
include = ["runnerscale", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
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
