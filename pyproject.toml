[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodeproblem"
version = "0.1.0"
description = "Exporters for node problem reports: node condition syncing, event recording and Stackdriver exporter configuration"
requires-python = ">=3.10"
dependencies = []
keywords = ["node", "problem", "monitoring", "conditions", "events", "exporter", "kubernetes", "stackdriver"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
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
packages = ["nodeproblem"]

[tool.pytest.ini_options]
addopts = "-ra"
