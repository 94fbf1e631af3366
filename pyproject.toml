[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshcontrol"
version = "0.1.0"
description = "Coordination-server core for a mesh VPN: machines, users, keys, routes, DNS, DERP maps and STUN"
requires-python = ">=3.10"
keywords = [
    "mesh",
    "vpn",
    "wireguard",
    "control-server",
    "derp",
    "stun",
    "magicdns",
    "subnet-routing",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
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
    "bcrypt",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["meshcontrol"]

[tool.hatch.build.targets.sdist]
include = [
    "meshcontrol",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
