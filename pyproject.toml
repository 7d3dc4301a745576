[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "redsox"
version = "0.7.0"
description = "Building blocks for a transparent proxy redirector: SOCKS4, SOCKS5, Shadowsocks and DNS-over-TCP forwarding."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "proxy",
    "socks4",
    "socks5",
    "shadowsocks",
    "redirector",
    "transparent-proxy",
    "dns",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["redsox"]

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
