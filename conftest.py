"""Pytest hooks for the homework evaluator. Reminds when live provider credentials are not set."""

import os


def pytest_configure(config):
    """Unit tests never call live services; note it when no credentials are exported."""
    if not (os.environ.get("SUPABASE_URL") and os.environ.get("OCR_SPACE_API_KEY")):
        print(
            "\nTip: live runs need SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY, OCR_SPACE_API_KEY and "
            "GEMINI_API_KEY (or copy .env.example to .env). Unit tests use stubs and mocks.\n",
            end="",
        )
