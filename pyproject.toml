[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "migradb"
version = "0.1.0"
description = "Database drivers for schema migrations: version tracking, locking and migration execution for SQLite and PostgreSQL."
requires-python = ">=3.10"
dependencies = []
keywords = ["migrations", "database", "schema", "sqlite", "postgres", "sql"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["migradb"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
