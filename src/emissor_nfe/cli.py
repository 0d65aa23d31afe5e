from __future__ import annotations

import argparse
import getpass
import logging
import os
import stat
import sys
from importlib.resources import files
from pathlib import Path

# Exit codes: 0 success, 1 rejected/failed, 2 usage or configuration, 3 pending (timed out)
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_PENDING = 3

_SUCCESS = {"authorized", "cancelled", "correction_registered"}

_TEMPLATES = ("emitter.yaml.example", "notas/nota.yaml.example")


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed.

    Uses dotenv.set_key for proper quoting (handles #, spaces, etc.).
    """
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    """Remove a key from a .env file if present."""
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tem permissões abertas.")
            print("  Recomendação: chmod 600", env_file)
    except OSError:
        pass


_STORE_KEYRING = "1"
_STORE_DOTENV = "2"
_STORE_NONE = "3"


def _ask_pfx_path() -> str | None:
    """Prompt until an existing .pfx/.p12 is given; empty answer skips."""
    while True:
        answer = input("Caminho do certificado A1 (.pfx/.p12, vazio para pular): ").strip()
        if not answer:
            return None
        if Path(answer).is_file():
            return answer
        print(f"  Arquivo não encontrado: {answer}")


def _describe_certificate(info: dict) -> None:
    print(f"  Titular: {info['subject']}")
    print(f"  Emissora: {info['issuer']}")
    if info["holder_document"]:
        print(f"  CNPJ do certificado: {info['holder_document']}")
    print(f"  Validade: {info['not_before']} a {info['not_after']}")
    if not info["valid"]:
        print("  AVISO: certificado fora da validade, a SEFAZ rejeitará a assinatura")


def _choose_password_store(keyring_ok: bool) -> str:
    options = {
        _STORE_DOTENV: "Arquivo .env no diretório de configuração",
        _STORE_NONE: "Não armazenar (definir CERT_PFX_PASSWORD manualmente)",
    }
    if keyring_ok:
        options = {_STORE_KEYRING: "Keychain do sistema (recomendado)", **options}

    print()
    print("Onde guardar a senha do certificado?")
    for key, label in options.items():
        print(f"  {key}. {label}")
    if not keyring_ok:
        print("  (keychain do sistema indisponível)")

    choice = ""
    while choice not in options:
        choice = input(f"Opção [{'/'.join(options)}]: ").strip()
    return choice


def _store_password(env_file: Path, password: str, choice: str) -> None:
    from emissor_nfe.config import _delete_keyring_password, _set_keyring_password

    if choice == _STORE_KEYRING and _set_keyring_password(password):
        _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        print("  Senha guardada no keychain do sistema.")
    elif choice in (_STORE_KEYRING, _STORE_DOTENV):
        if choice == _STORE_KEYRING:
            print("  ERRO: Falha ao armazenar no keychain, usando o .env.")
        else:
            _delete_keyring_password()
        _upsert_env_var(env_file, "CERT_PFX_PASSWORD", password)
        print(f"  Senha gravada em {env_file}")
        _warn_open_permissions(env_file)
    else:
        _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        _delete_keyring_password()
        print("  Senha não armazenada. Exporte CERT_PFX_PASSWORD antes de emitir.")


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive A1 certificate setup. Returns True if a certificate was configured."""
    print()
    print("Certificado digital A1 (e-CNPJ)")
    print()

    pfx_path = _ask_pfx_path()
    if pfx_path is None:
        print("  Certificado não configurado.")
        return False
    password = getpass.getpass("Senha do certificado: ")

    from emissor_nfe.services.exceptions import CertificateError
    from emissor_nfe.utils.certificate import validate_certificate

    try:
        info = validate_certificate(pfx_path, password)
    except (CertificateError, OSError) as e:
        print(f"  ERRO: não foi possível abrir o certificado: {e}")
        return False
    _describe_certificate(info)

    env_file = config_dir / ".env"
    _upsert_env_var(env_file, "CERT_PFX_PATH", pfx_path)
    _store_password(env_file, password, _choose_password_store(_check_keyring_available()))
    return True


def _init_config() -> None:
    """Copy bundled config templates to the user's config/data directories."""
    from emissor_nfe.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("emissor_nfe") / "templates"

    for directory in (config_dir / "notas", data_dir):
        directory.mkdir(parents=True, exist_ok=True)

    created = []
    for rel in _TEMPLATES:
        dest = config_dir / rel
        if dest.exists():
            print(f"  já existe: {dest}")
            continue
        dest.write_bytes((templates / rel).read_bytes())
        print(f"  criado: {dest}")
        created.append(dest)

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados (XML autorizados, eventos, numeração): {data_dir}")
    print()

    with_cert = False
    try:
        if input("Configurar o certificado A1 agora? [S/n]: ").strip().lower() in ("", "s", "sim", "y", "yes"):
            with_cert = _setup_certificate(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    print()
    if not created:
        print("Nenhum arquivo novo criado (todos já existiam).")
        return
    steps = [
        f"cp {config_dir / 'emitter.yaml.example'} {config_dir / 'emitter.yaml'}",
        "Preencha emitter.yaml com CNPJ, inscrição estadual, regime tributário e endereço",
    ]
    if not with_cert:
        steps.append("Defina CERT_PFX_PATH e CERT_PFX_PASSWORD no .env")
    steps.append("Teste a conexão: emissor-nfe status")
    print("Próximos passos:")
    for n, step in enumerate(steps, 1):
        print(f"  {n}. {step}")


def _preflight() -> bool:
    """Verify minimal config before talking to SEFAZ.

    Auto-creates the data directory. Returns False with a helpful
    message when the config directory or emitter.yaml is missing.
    """
    from emissor_nfe.config import get_config_dir, get_data_dir

    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    config_dir = get_config_dir()
    if not config_dir.is_dir():
        print(f"Erro: diretório de configuração não encontrado: {config_dir}")
        print("Execute 'emissor-nfe init' para criar os arquivos de exemplo.")
        return False
    if not (config_dir / "emitter.yaml").is_file():
        print(f"Erro: emitter.yaml não encontrado em {config_dir}")
        print("Execute 'emissor-nfe init' e configure o emitente.")
        return False
    return True


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else os.environ.get("EMISSOR_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _print_result(result: dict) -> int:
    from emissor_nfe.services.sefaz_status import user_message

    for key, value in result.items():
        if value is not None:
            print(f"{key}: {value}")
    code = result.get("status_code", result.get("last_status_code"))
    if code is not None:
        print(f"situação: {user_message(code)}")
    outcome = result.get("outcome")
    if outcome in _SUCCESS or (outcome == "service_status" and result.get("online")):
        return EXIT_OK
    if outcome == "timed_out":
        print("Sem resposta definitiva. Consulte a chave mais tarde com 'emissor-nfe consultar'.")
        return EXIT_PENDING
    return EXIT_FAILED


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="emissor-nfe", description="Emissor de NF-e modelo 55")
    parser.add_argument("-v", "--verbose", action="store_true", help="log detalhado (DEBUG)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="cria arquivos de configuração de exemplo")

    def with_env(p: argparse.ArgumentParser, default: str | None = "homologacao") -> argparse.ArgumentParser:
        p.add_argument("--ambiente", choices=["homologacao", "producao"], default=default)
        return p

    p = with_env(sub.add_parser("status", help="consulta o status do serviço da SEFAZ"))
    p.add_argument("--uf", help="UF autorizadora (padrão: UF do emitente)")

    p = with_env(sub.add_parser("autorizar", help="emite uma NF-e a partir de um arquivo YAML"), None)
    p.add_argument("nota", help="arquivo YAML da nota")

    p = with_env(sub.add_parser("consultar", help="consulta uma NF-e pela chave de acesso"))
    p.add_argument("chave")

    p = with_env(sub.add_parser("cancelar", help="cancela uma NF-e autorizada"))
    p.add_argument("chave")
    p.add_argument("protocolo")
    p.add_argument("justificativa")
    p.add_argument("--sequencia", type=int, default=1)

    p = with_env(sub.add_parser("corrigir", help="registra uma carta de correção"))
    p.add_argument("chave")
    p.add_argument("correcao")
    p.add_argument("--sequencia", type=int, default=1)
    return parser


def _dispatch(args: argparse.Namespace) -> dict:
    from emissor_nfe.services import emission

    if args.command == "status":
        return emission.status(args.ambiente, args.uf)
    if args.command == "autorizar":
        return emission.authorize(args.nota, args.ambiente)
    if args.command == "consultar":
        return emission.query(args.chave, args.ambiente)
    if args.command == "cancelar":
        return emission.cancel(args.chave, args.protocolo, args.justificativa, args.ambiente, args.sequencia)
    return emission.correct(args.chave, args.correcao, args.sequencia, args.ambiente)


def main(argv: list[str] | None = None) -> None:
    """Entry point for the emissor-nfe CLI."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == "init":
        _init_config()
        return

    if not _preflight():
        sys.exit(EXIT_CONFIG)

    from emissor_nfe.services.exceptions import NFeError

    try:
        result = _dispatch(args)
    except KeyError as e:
        print(f"Erro: configuração ausente: {e}")
        sys.exit(EXIT_CONFIG)
    except (NFeError, ValueError, OSError) as e:
        print(f"Erro: {e}")
        sys.exit(EXIT_FAILED)
    code = _print_result(result)
    if code != EXIT_OK:
        sys.exit(code)


if __name__ == "__main__":
    main()
