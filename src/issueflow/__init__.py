"""Issue-to-merge workflow orchestration for GitHub repositories.

This package provides:
- GitHub webhook verification, filtering and idempotent admission
- A single-consumer pipeline driver with a validated stage machine
- Dependency-aware task scheduling with bounded retries
- Progressive autonomy gating of pull request actions
- PostgreSQL (or in-memory) persistence of runs, tasks and audit records
"""
