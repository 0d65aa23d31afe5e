from __future__ import annotations

import os
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

from emissor_nfe.services.exceptions import NFeValidationError

APP_NAME = "emissor-nfe"
KEYRING_SERVICE = "emissor-nfe"
KEYRING_USERNAME = "cert-pfx-password"


def _checkout_root() -> Path:
    # src/emissor_nfe/config.py -> repository root, when running from a checkout
    return Path(__file__).resolve().parents[2]


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """First of: $env_var, <checkout>/default_subdir if present, the platformdirs user dir."""
    override = os.environ.get(env_var)
    if override:
        return Path(override)
    local = _checkout_root() / default_subdir
    if local.is_dir():
        return local
    user_dir = platformdirs.user_config_dir if kind == "config" else platformdirs.user_data_dir
    return Path(user_dir(APP_NAME))


def get_config_dir() -> Path:
    """Directory with emitter.yaml, notas/, endpoints.yaml and .env (read on every call)."""
    return _resolve_dir("EMISSOR_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Directory with issued XML, events and sequence.json (read on every call)."""
    return _resolve_dir("EMISSOR_DATA_DIR", "data", kind="data")


def _dotenv_dir() -> Path | None:
    # Before .env is read only the shell environment can point elsewhere; an
    # uncreated platformdirs location has nothing to load.
    candidate = get_config_dir()
    return candidate if candidate.is_dir() else None


# Variables already set (shell, then ./.env) win over the config dir .env
load_dotenv()
_cfg_dir = _dotenv_dir()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


NFE_NS = "http://www.portalfiscal.inf.br/nfe"
WSDL_NS = "http://www.portalfiscal.inf.br/nfe/wsdl"
NFE_VERSION = "4.00"
EVENT_VERSION = "1.00"

BRT = timezone(timedelta(hours=-3))

TP_AMB = {"homologacao": "2", "producao": "1"}

SEFAZ_TIMEOUT = 60

# --- SEFAZ web services ---

SERVICES = (
    "autorizacao",
    "ret_autorizacao",
    "consulta_protocolo",
    "status_servico",
    "recepcao_evento",
)

# Authorizer -> (host per environment, path per service)
_AUTHORIZERS: dict[str, tuple[dict[str, str], dict[str, str]]] = {
    "AM": (
        {"homologacao": "https://homnfe.sefaz.am.gov.br", "producao": "https://nfe.sefaz.am.gov.br"},
        {
            "autorizacao": "/services2/services/NfeAutorizacao4",
            "ret_autorizacao": "/services2/services/NfeRetAutorizacao4",
            "consulta_protocolo": "/services2/services/NfeConsulta4",
            "status_servico": "/services2/services/NfeStatusServico4",
            "recepcao_evento": "/services2/services/RecepcaoEvento4",
        },
    ),
    "BA": (
        {"homologacao": "https://hnfe.sefaz.ba.gov.br", "producao": "https://nfe.sefaz.ba.gov.br"},
        {
            "autorizacao": "/webservices/NFeAutorizacao4/NFeAutorizacao4.asmx",
            "ret_autorizacao": "/webservices/NFeRetAutorizacao4/NFeRetAutorizacao4.asmx",
            "consulta_protocolo": "/webservices/NFeConsultaProtocolo4/NFeConsultaProtocolo4.asmx",
            "status_servico": "/webservices/NFeStatusServico4/NFeStatusServico4.asmx",
            "recepcao_evento": "/webservices/NFeRecepcaoEvento4/NFeRecepcaoEvento4.asmx",
        },
    ),
    "GO": (
        {"homologacao": "https://homolog.sefaz.go.gov.br", "producao": "https://nfe.sefaz.go.gov.br"},
        {
            "autorizacao": "/nfe/services/NFeAutorizacao4",
            "ret_autorizacao": "/nfe/services/NFeRetAutorizacao4",
            "consulta_protocolo": "/nfe/services/NFeConsultaProtocolo4",
            "status_servico": "/nfe/services/NFeStatusServico4",
            "recepcao_evento": "/nfe/services/NFeRecepcaoEvento4",
        },
    ),
    "MG": (
        {"homologacao": "https://hnfe.fazenda.mg.gov.br", "producao": "https://nfe.fazenda.mg.gov.br"},
        {
            "autorizacao": "/nfe2/services/NFeAutorizacao4",
            "ret_autorizacao": "/nfe2/services/NFeRetAutorizacao4",
            "consulta_protocolo": "/nfe2/services/NFeConsulta4",
            "status_servico": "/nfe2/services/NFeStatusServico4",
            "recepcao_evento": "/nfe2/services/NFeRecepcaoEvento4",
        },
    ),
    "MS": (
        {"homologacao": "https://hom.nfe.sefaz.ms.gov.br", "producao": "https://nfe.sefaz.ms.gov.br"},
        {
            "autorizacao": "/ws/NFeAutorizacao4",
            "ret_autorizacao": "/ws/NFeRetAutorizacao4",
            "consulta_protocolo": "/ws/NFeConsultaProtocolo4",
            "status_servico": "/ws/NFeStatusServico4",
            "recepcao_evento": "/ws/NFeRecepcaoEvento4",
        },
    ),
    "MT": (
        {"homologacao": "https://homologacao.sefaz.mt.gov.br", "producao": "https://nfe.sefaz.mt.gov.br"},
        {
            "autorizacao": "/nfews/v2/services/NfeAutorizacao4",
            "ret_autorizacao": "/nfews/v2/services/NfeRetAutorizacao4",
            "consulta_protocolo": "/nfews/v2/services/NfeConsulta4",
            "status_servico": "/nfews/v2/services/NfeStatusServico4",
            "recepcao_evento": "/nfews/v2/services/RecepcaoEvento4",
        },
    ),
    "PE": (
        {"homologacao": "https://nfehomolog.sefaz.pe.gov.br", "producao": "https://nfe.sefaz.pe.gov.br"},
        {
            "autorizacao": "/nfe-service/services/NFeAutorizacao4",
            "ret_autorizacao": "/nfe-service/services/NFeRetAutorizacao4",
            "consulta_protocolo": "/nfe-service/services/NFeConsultaProtocolo4",
            "status_servico": "/nfe-service/services/NFeStatusServico4",
            "recepcao_evento": "/nfe-service/services/NFeRecepcaoEvento4",
        },
    ),
    "PR": (
        {"homologacao": "https://homologacao.nfe.sefa.pr.gov.br", "producao": "https://nfe.sefa.pr.gov.br"},
        {
            "autorizacao": "/nfe/NFeAutorizacao4",
            "ret_autorizacao": "/nfe/NFeRetAutorizacao4",
            "consulta_protocolo": "/nfe/NFeConsultaProtocolo4",
            "status_servico": "/nfe/NFeStatusServico4",
            "recepcao_evento": "/nfe/NFeRecepcaoEvento4",
        },
    ),
    "RS": (
        {"homologacao": "https://nfe-homologacao.sefazrs.rs.gov.br", "producao": "https://nfe.sefazrs.rs.gov.br"},
        {
            "autorizacao": "/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
            "ret_autorizacao": "/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx",
            "consulta_protocolo": "/ws/NfeConsulta/NfeConsulta4.asmx",
            "status_servico": "/ws/NfeStatusServico/NfeStatusServico4.asmx",
            "recepcao_evento": "/ws/recepcaoevento/recepcaoevento4.asmx",
        },
    ),
    "SP": (
        {"homologacao": "https://homologacao.nfe.fazenda.sp.gov.br", "producao": "https://nfe.fazenda.sp.gov.br"},
        {
            "autorizacao": "/ws/nfeautorizacao4.asmx",
            "ret_autorizacao": "/ws/nferetautorizacao4.asmx",
            "consulta_protocolo": "/ws/nfeconsultaprotocolo4.asmx",
            "status_servico": "/ws/nfestatusservico4.asmx",
            "recepcao_evento": "/ws/nferecepcaoevento4.asmx",
        },
    ),
    "SVRS": (
        {"homologacao": "https://nfe-homologacao.svrs.rs.gov.br", "producao": "https://nfe.svrs.rs.gov.br"},
        {
            "autorizacao": "/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
            "ret_autorizacao": "/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx",
            "consulta_protocolo": "/ws/NfeConsulta/NfeConsulta4.asmx",
            "status_servico": "/ws/NfeStatusServico/NfeStatusServico4.asmx",
            "recepcao_evento": "/ws/recepcaoevento/recepcaoevento4.asmx",
        },
    ),
}


def authorizer_for(uf: str) -> str:
    """Return the authorizer for a UF: its own SEFAZ or the SVRS virtual one."""
    uf = uf.upper()
    return uf if uf in _AUTHORIZERS else "SVRS"


def build_endpoints(uf: str, env: str) -> dict[str, str]:
    """Return the service -> URL table for an emitter UF and environment.

    Entries in config/endpoints.yaml (``{env: {service: url}}``) override
    the built-in table, e.g. for contingency (SVC-AN/SVC-RS) or proxies.
    """
    if env not in TP_AMB:
        raise NFeValidationError(f"Ambiente inválido: {env}")
    hosts, paths = _AUTHORIZERS[authorizer_for(uf)]
    endpoints = {service: hosts[env] + path for service, path in paths.items()}
    overrides_file = get_config_dir() / "endpoints.yaml"
    if overrides_file.exists():
        overrides = (load_yaml(overrides_file) or {}).get(env) or {}
        unknown = set(overrides) - set(SERVICES)
        if unknown:
            raise ValueError(f"Serviços desconhecidos em endpoints.yaml: {', '.join(sorted(unknown))}")
        endpoints.update(overrides)
    return endpoints


# --- Keyring helpers ---


# Keyring access never raises: a missing backend or D-Bus failure reads as "not stored".


def _get_keyring_password() -> str | None:
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_password(password: str) -> bool:
    """Save the A1 certificate password in the OS keyring; False if that failed."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, password)
    except Exception:
        return False
    return True


def _delete_keyring_password() -> bool:
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return False
    return True


# --- Certificate access ---


def get_cert_path() -> str:
    """Path of the A1 .pfx/.p12 file (CERT_PFX_PATH); KeyError when unset."""
    return os.environ["CERT_PFX_PATH"]


def get_cert_password() -> str:
    """CERT_PFX_PASSWORD from the environment, else from the keyring; KeyError when neither has it."""
    password = os.environ.get("CERT_PFX_PASSWORD")
    if password is None:
        password = _get_keyring_password()
    if password is None:
        raise KeyError("CERT_PFX_PASSWORD")
    return password


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def load_emitter() -> dict:
    """Emitter (emitente) data from emitter.yaml in the config dir."""
    return load_yaml(get_config_dir() / "emitter.yaml")


def get_issued_dir(env: str) -> Path:
    """Authorized nfeProc XML for one environment."""
    return get_data_dir() / env / "issued"


def get_events_dir(env: str) -> Path:
    """Return the directory holding processed event XML (cancelamento, CC-e)."""
    return get_data_dir() / env / "events"
