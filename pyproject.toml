[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fiberrt"
version = "0.1.0"
description = "Cooperative coroutine runtime with a work-stealing scheduler, timers, IO readiness events, request deadlines and retry budgets"
requires-python = ">=3.10"
dependencies = []
keywords = ["coroutine", "scheduler", "work-stealing", "timer", "selectors", "deadline", "retry-budget"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fiberrt"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
