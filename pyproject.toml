[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "warpplus"
version = "0.1.0"
description = "WARP toolkit: asyncio SOCKS4/SOCKS5/HTTP proxy servers, WARP keys, endpoints and registration API, identity storage and a handshake probe"
requires-python = ">=3.10"
keywords = [
    "warp",
    "wireguard",
    "socks5",
    "socks4",
    "http-proxy",
    "proxy",
    "asyncio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "requests",
    "cryptography",
    "dnspython",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["warpplus"]

[tool.hatch.build.targets.sdist]
include = ["warpplus", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
