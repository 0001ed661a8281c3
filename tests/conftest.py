"""
conftest.py – central pytest configuration and test bootstrap ("config test").

Purpose and behavior:
- Pytest imports this module before it collects any test files, which lets us prepare the
  environment so that importing `learnflow` succeeds the same way everywhere:
  1) Extend `sys.path` with the project root so `import learnflow` works without an editable
     install, and with this directory so test modules can share the fakes in `fakes.py`.
  2) Define safe default environment variables read at import time by the configuration
     layer: a dummy `NEBIUS_API_KEY` for the LLM provider, and an empty `LOG_FILE_PATH` so the
     test run never writes a rotating log file next to the sources.

Tests never talk to a real LLM, code analyzer, renderer or database. Every collaborator is
replaced by the in-memory implementations from `learnflow.provider_api.mock_client` or by
the scripted fakes in `fakes.py`.
"""

import os
import sys
from pathlib import Path

# Ensure project root is on sys.path for direct imports like `learnflow.core`
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

# Provide required environment defaults for tests
os.environ.setdefault("NEBIUS_API_KEY", "test-key")
os.environ.setdefault("LOG_FILE_PATH", "")
