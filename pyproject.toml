[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "osim"
version = "0.1.0"
description = "A teaching operating-system simulator: a kernel with FIFO, RR and VRR scheduling and a paged memory server"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "operating-system",
    "scheduler",
    "round-robin",
    "paging",
    "simulation",
    "education",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Education",
    "Topic :: System :: Operating System",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
osim-kernel = "osim.kernel_app:main"
osim-memory = "osim.memory_server:main"

[tool.hatch.build.targets.wheel]
packages = ["osim"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
