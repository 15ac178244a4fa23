"""Root conftest so `tests.helpers` resolves from the repository root."""
