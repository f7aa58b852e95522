[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshcontrol"
version = "0.1.0"
description = "Building blocks for a WireGuard mesh coordination server: peer descriptions, map responses, update fan-out, OIDC checks and client configuration profiles"
requires-python = ">=3.10"
keywords = ["wireguard", "mesh", "vpn", "coordination-server", "oidc", "netmap"]
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
    "Topic :: System :: Networking",
]
dependencies = [
    "zstandard",
    "pynacl",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["meshcontrol"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
