[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "caelis"
version = "0.1.0"
description = "Agent runtime kernel: sessions, policy hooks, prompt assembly, skills discovery and history compaction."
requires-python = ">=3.10"
dependencies = []
keywords = ["agent", "llm", "runtime", "session", "policy", "compaction", "prompt", "skills"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["caelis"]

[tool.hatch.build.targets.sdist]
include = ["caelis", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
