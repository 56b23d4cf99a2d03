"""Sandboxed multi-language code execution service.

The package accepts ``(language, source, stdin)``, runs the program in a
throw-away sandbox under CPU, memory, process and output ceilings and
returns what it printed, how it exited and what it cost.

The top-level modules include:

* ``config`` – configuration handling for environment variables.
* ``errors`` – outcome conditions and engine exceptions.
* ``models`` – Pydantic models defining request and response schemas.
* ``engine`` – registry, sandbox, executor and the coordinator tying them together.
* ``api`` – FastAPI application exposing HTTP endpoints.
"""
