from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock

from emissor_nfe import config as _config

MAX_NUMERO = 999_999_999


def _sequence_file() -> Path:
    return _config.get_data_dir() / "sequence.json"


@contextmanager
def _locked() -> Iterator[None]:
    """Hold an exclusive file lock during sequence read-modify-write."""
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(sf.with_suffix(".lock"))
    with lock:
        yield


def _load() -> dict[str, dict[str, int]]:
    sf = _sequence_file()
    if not sf.exists():
        return {"homologacao": {}, "producao": {}}
    return json.loads(sf.read_text())


def _save(data: dict[str, dict[str, int]]) -> None:
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    tmp = sf.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, sf)


def next_numero(env: str = "homologacao", serie: int = 1) -> int:
    """Reserve and persist the next nNF for (env, serie)."""
    with _locked():
        data = _load()
        per_env = data.setdefault(env, {})
        numero = per_env.get(str(serie), 0) + 1
        if numero > MAX_NUMERO:
            raise ValueError(f"Série {serie} esgotada em {env}")
        per_env[str(serie)] = numero
        _save(data)
        return numero
