"""Storage initialization and the shared repository."""

from pathlib import Path

from character_manager.storage import FileStore, Repository

_data_dir: Path | None = None
_repository: Repository | None = None


def init_storage(data_dir: Path) -> None:
    global _data_dir, _repository
    _data_dir = data_dir
    _data_dir.mkdir(parents=True, exist_ok=True)
    _repository = Repository(FileStore(store_dir()))


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_storage() before using storage"
    return _data_dir


def store_dir() -> Path:
    return data_dir() / "store"


def repository() -> Repository:
    assert _repository is not None, "Call init_storage() before using storage"
    return _repository
