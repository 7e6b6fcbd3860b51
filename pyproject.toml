[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "aplogin"
version = "0.1.0"
description = "OAuth token broker building blocks for Google and Microsoft accounts addressed by provider:label handles."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "oauth",
    "oauth2",
    "token",
    "google",
    "microsoft",
    "graph",
    "gcloud",
    "azure",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration :: Authentication/Directory",
    "Topic :: Internet :: WWW/HTTP",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["aplogin"]

[tool.hatch.build.targets.sdist]
include = ["aplogin", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
