[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "buildrig"
version = "0.1.0"
description = "Build driver registry and drivers, build option resolution, semantic version constraints and local build state"
requires-python = ">=3.11"
dependencies = []
keywords = ["build", "buildkit", "driver", "container", "kubernetes", "semver"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["buildrig"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
