"""FastAPI dependency helpers."""
from __future__ import annotations

from fastapi import Depends

from app.core.config import Settings, get_settings
from app.db.session import get_optional_session_maker
from app.services.api_keys import SQLApiKeyStore
from app.services.rate_limit import AdmissionGate, build_admission_gate

# One gate per configuration so the pruner cadence survives across requests
_admission_gate: AdmissionGate | None = None
_admission_gate_config: str | None = None


def get_api_key_store(settings: Settings = Depends(get_settings)) -> SQLApiKeyStore:
    """Return the SQL-backed key registry for the configured database."""

    return SQLApiKeyStore(get_optional_session_maker(settings))


async def get_admission_gate(settings: Settings = Depends(get_settings)) -> AdmissionGate:
    """Return the shared admission gate, rebuilt when settings change.

    Runs on the event loop (no awaits inside), so concurrent first requests
    cannot build competing gates.
    """

    global _admission_gate, _admission_gate_config
    config = settings.model_dump_json()
    if _admission_gate is None or _admission_gate_config != config:
        _admission_gate = build_admission_gate(settings, get_optional_session_maker(settings))
        _admission_gate_config = config
    return _admission_gate
