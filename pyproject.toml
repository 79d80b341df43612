[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "shadowrelay"
version = "0.1.0"
description = "Building blocks for an encrypted SOCKS relay: address helpers, a nonce-replay filter, plugin launching and a multi-port manager daemon"
requires-python = ">=3.10"
dependencies = []
keywords = ["proxy", "socks5", "relay", "bloom-filter", "manager", "plugin"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
shadowrelay-manager = "shadowrelay.manager:main"

[tool.hatch.build.targets.wheel]
packages = ["shadowrelay"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
