[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "greatws"
version = "0.1.0"
description = "Event-loop driven WebSocket client connections with a streaming frame parser, callbacks and per-message deflate"
requires-python = ">=3.10"
dependencies = []
keywords = ["websocket", "rfc6455", "event-loop", "selectors", "permessage-deflate", "autobahn"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
greatws-autobahn-client = "greatws.autobahn_client:main"

[tool.hatch.build.targets.wheel]
packages = ["greatws"]

[tool.pytest.ini_options]
addopts = "-ra"
