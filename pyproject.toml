[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kelemetry"
version = "0.1.0"
description = "Aggregate Kubernetes audit events into object-scoped trace spans"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "audit", "tracing", "observability", "spans"]
classifiers = [
    "Development Status :: 3 - Alpha",
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
packages = ["kelemetry"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
