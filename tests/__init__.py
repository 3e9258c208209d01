"""
deferline Test Suite
====================

Test organization mirrors the source code structure:
    tests/
    ├── test_core/          → Tests for deferline.core (config, models, exceptions, identity)
    ├── test_orchestration/ → Tests for deferline.orchestration (store, queue, dispatcher, worker, ...)
    ├── test_integration/   → End-to-end scenarios through the facade
    ├── test_facade.py      → Tests for the Deferline facade
    └── conftest.py         → Shared pytest fixtures

Running Tests:
    pytest                          # Run all tests
    pytest tests/test_core/         # Run only core tests
    pytest tests/test_integration/  # Run only end-to-end scenarios
"""
