[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bookystore"
version = "0.1.0"
description = "SQLite storage for Stripe-to-Bokio bookkeeping: accounting facts, posting runs, VAT filings, tax cases and webhook events."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "accounting",
    "bookkeeping",
    "vat",
    "oss",
    "periodic-summary",
    "stripe",
    "bokio",
    "sqlite",
    "ledger",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: Office/Business :: Financial :: Accounting",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["bookystore"]

[tool.hatch.build.targets.sdist]
include = ["bookystore", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
