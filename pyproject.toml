[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rxdm"
version = "1.0.19"
description = "Building blocks of a receive data-path buffer manager: GPU/NIC pairing, DMA-BUF mapping and buffer registration over Unix domain sockets"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = [
    "gpu",
    "nic",
    "dma-buf",
    "pci",
    "unix-domain-socket",
    "buffer-manager",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["rxdm"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
