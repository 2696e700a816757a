[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vpnmux"
version = "0.1.0"
description = "Multiplexed stream protocol, port proxies and tunnel messages for host/VM networking"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "multiplexer",
    "proxy",
    "port-forwarding",
    "tunnel",
    "udp",
    "tcp",
    "networking",
    "iptables",
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
    "Topic :: System :: Networking",
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
vpnmux-iptables-wrapper = "vpnmux.iptables_wrapper:main"

[tool.hatch.build.targets.wheel]
packages = ["vpnmux"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
