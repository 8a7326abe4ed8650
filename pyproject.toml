[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "agentgate"
version = "0.1.0"
description = "Building blocks for an agent-aware LLM inference gateway: capability registry, routing cost model, prefix affinity, response caching, circuit breakers, fallback, policy and streaming tool-call detection."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "llm",
    "gateway",
    "proxy",
    "agent",
    "prefix-cache",
    "circuit-breaker",
    "fallback",
    "policy",
    "tool-calling",
]
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
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["agentgate"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
