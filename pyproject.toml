[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "l4router"
version = "0.1.0"
description = "Layer 4 connection router: match raw TCP/UDP byte streams and hand them to composable handlers"
requires-python = ">=3.10"
dependencies = [
    "dnspython",
]
keywords = [
    "layer4",
    "tcp",
    "udp",
    "router",
    "multiplexer",
    "dns",
]
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
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
l4router = "l4router.app:main"

[tool.hatch.build.targets.wheel]
packages = ["l4router"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
