[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "webapp"
version = "0.1.0"
description = "Helpers for running WSGI web applications: graceful servers, redirects, TLS certificate caching and validation, go-get meta tags, JSON endpoints and static assets."
requires-python = ">=3.10"
keywords = ["http", "wsgi", "tls", "redirect", "certificates", "go-get", "json-api"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Internet :: WWW/HTTP :: WSGI",
    "Topic :: Security :: Cryptography",
]
dependencies = [
    "cryptography",
    "pyyaml",
    "idna",
]

[project.optional-dependencies]
test = [
    "pytest",
    "cryptography",
]

[tool.hatch.build.targets.wheel]
packages = ["webapp"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
