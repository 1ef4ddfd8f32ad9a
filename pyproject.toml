[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "llmbalancer"
version = "0.1.0"
description = "A gateway that spreads LLM generation tasks across worker nodes, with a priority task queue, circuit breakers and several routing strategies."
requires-python = ">=3.10"
keywords = ["llm", "load-balancer", "gateway", "ollama", "circuit-breaker", "task-queue"]
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
    "Topic :: System :: Distributed Computing",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "requests>=2.28",
    "pyyaml>=6.0",
    "flask>=2.2",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "responses>=0.23",
]

[project.scripts]
llmbalancer-gateway = "llmbalancer.gateway_app:main"

[tool.hatch.build.targets.wheel]
packages = ["llmbalancer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
