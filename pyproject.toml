[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "formgate"
version = "0.1.0"
description = "A small HTTP gateway core that handles multipart/form-data requests, with routes, middlewares and health checks supplied by modules"
requires-python = ">=3.10"
dependencies = []
keywords = ["http", "server", "multipart", "form-data", "middleware", "health-check"]
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
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["formgate"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
