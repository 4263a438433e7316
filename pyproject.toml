[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lwscontrol"
version = "0.1.0"
description = "Reconciliation logic for leader/worker groups of pods: rolling updates, status conditions, worker statefulsets and TPU environment wiring, over an in-memory object store."
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "controller", "statefulset", "leader-worker", "reconciler", "tpu"]
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
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["lwscontrol"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
