from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

from emissor_nfe.config import (
    get_cert_password,
    get_cert_path,
    get_events_dir,
    get_issued_dir,
    load_emitter,
    load_yaml,
)
from emissor_nfe.models.emitter import Emitter
from emissor_nfe.models.invoice import HOMOLOGACAO, InvoiceDraft
from emissor_nfe.models.outcomes import (
    Authorized,
    Cancelled,
    CancellationRequest,
    CertificateData,
    CorrectionRegistered,
    CorrectionRequest,
)
from emissor_nfe.services.orchestrator import AuthorizationOrchestrator
from emissor_nfe.utils.sequence import next_numero

logger = logging.getLogger(__name__)


def load_certificate_data() -> CertificateData:
    """Read the configured .pfx (CERT_PFX_PATH) and its password."""
    return CertificateData(Path(get_cert_path()).read_bytes(), get_cert_password())


def load_draft(nota_path: str | Path, env: str | None = None) -> InvoiceDraft:
    """Build an InvoiceDraft from a nota YAML file and the configured emitter.

    A nota without ``numero`` gets the next nNF of its (env, serie) sequence.
    """
    emitter = Emitter.from_dict(load_emitter())
    draft = InvoiceDraft.from_dict(load_yaml(Path(nota_path)) or {}, emitter, environment=env)
    if draft.numero <= 0:
        draft = dataclasses.replace(draft, numero=next_numero(draft.environment, draft.serie))
        logger.info("nNF %d reservado (série %d, %s)", draft.numero, draft.serie, draft.environment)
    return draft


def _write(path: Path, content: bytes) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return str(path)


def save_outcome(outcome: object, env: str) -> str | None:
    """Persist the XML carried by an outcome; returns the path written, if any."""
    if isinstance(outcome, Authorized):
        return _write(get_issued_dir(env) / f"{outcome.access_key}-nfe.xml", outcome.signed_xml)
    if isinstance(outcome, Cancelled) and outcome.event_xml:
        return _write(get_events_dir(env) / f"{outcome.access_key}-canc.xml", outcome.event_xml)
    if isinstance(outcome, CorrectionRegistered) and outcome.event_xml:
        name = f"{outcome.access_key}-cce-{outcome.sequence:02d}.xml"
        return _write(get_events_dir(env) / name, outcome.event_xml)
    return None


def _report(outcome, env: str) -> dict:
    result = outcome.to_dict()
    # XML goes to disk, not into the summary
    for key in ("signed_xml", "event_xml"):
        result.pop(key, None)
    saved = save_outcome(outcome, env)
    if saved:
        result["saved_to"] = saved
    return result


def authorize(
    nota_path: str | Path,
    env: str | None = None,
    *,
    orchestrator: AuthorizationOrchestrator | None = None,
) -> dict:
    draft = load_draft(nota_path, env)
    orchestrator = orchestrator or AuthorizationOrchestrator()
    outcome = orchestrator.authorize(draft, load_certificate_data())
    return _report(outcome, draft.environment)


def cancel(
    access_key: str,
    protocol_number: str,
    justification: str,
    env: str = HOMOLOGACAO,
    sequence: int = 1,
    *,
    orchestrator: AuthorizationOrchestrator | None = None,
) -> dict:
    request = CancellationRequest(
        access_key=access_key,
        protocol_number=protocol_number,
        justification=justification,
        certificate=load_certificate_data(),
        environment=env,
        sequence=sequence,
    )
    outcome = (orchestrator or AuthorizationOrchestrator()).cancel(request)
    return _report(outcome, env)


def correct(
    access_key: str,
    correction: str,
    sequence: int,
    env: str = HOMOLOGACAO,
    *,
    orchestrator: AuthorizationOrchestrator | None = None,
) -> dict:
    request = CorrectionRequest(
        access_key=access_key,
        correction=correction,
        sequence=sequence,
        certificate=load_certificate_data(),
        environment=env,
    )
    outcome = (orchestrator or AuthorizationOrchestrator()).correct(request)
    return _report(outcome, env)


def query(
    access_key: str,
    env: str = HOMOLOGACAO,
    *,
    orchestrator: AuthorizationOrchestrator | None = None,
) -> dict:
    """Re-query an access key; an authorized answer is saved like a fresh authorization."""
    outcome = (orchestrator or AuthorizationOrchestrator()).query(access_key, load_certificate_data(), env)
    return _report(outcome, env)


def status(
    env: str = HOMOLOGACAO,
    uf: str | None = None,
    *,
    orchestrator: AuthorizationOrchestrator | None = None,
) -> dict:
    """Check the SEFAZ service status for *uf* (default: the emitter's UF)."""
    uf = uf or Emitter.from_dict(load_emitter()).uf
    outcome = (orchestrator or AuthorizationOrchestrator()).status(uf, env, load_certificate_data())
    return outcome.to_dict()
