[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodeguard"
version = "0.1.0"
description = "Per-user connection, device and speed limiting, traffic accounting and protocol sniffing for proxy nodes"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "proxy",
    "rate-limit",
    "token-bucket",
    "traffic",
    "sniffing",
    "fake-dns",
    "shadowsocks",
    "vmess",
    "vless",
    "trojan",
]
classifiers = [
    "Development Status :: 4 - Beta",
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
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nodeguard"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
