import os
import tempfile

from flask import current_app


def write_atomic(path: str, data: bytes) -> None:
    """Store ``data`` at ``path`` via a sibling ``.part`` file and a rename.

    Readers never observe a half-written certificate; the parent directory is
    created on demand.
    """
    target_dir = os.path.dirname(path) or "."
    os.makedirs(target_dir, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        dir=target_dir, prefix=".", suffix=".part", delete=False
    ) as handle:
        part_path = handle.name
        try:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        except OSError:
            handle.close()
            os.unlink(part_path)
            raise
    try:
        os.replace(part_path, path)
    except OSError:
        os.unlink(part_path)
        raise


def certificates_root() -> str:
    return os.path.join(current_app.config.get("SITE_ROOT", "/srv"), "certificates")


def templates_root() -> str:
    return os.path.join(current_app.config.get("SITE_ROOT", "/srv"), "templates")


def template_file_path(file_name: str | None) -> str | None:
    """Absolute path of a stored template image, or None if it escapes the root."""
    return safe_join(templates_root(), file_name)


def safe_join(root: str, candidate: str | None) -> str | None:
    """Resolve ``candidate`` under ``root``; None when it escapes the root."""
    raw = (candidate or "").strip()
    if not raw:
        return None
    root_real = os.path.realpath(root)
    resolved = os.path.realpath(os.path.join(root_real, raw))
    if resolved == root_real or resolved.startswith(f"{root_real}{os.sep}"):
        return resolved
    return None


def remove_quietly(path: str | None) -> bool:
    """Best-effort delete used on cleanup paths; failures are logged only."""
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError:
        current_app.logger.warning("[STORAGE] failed to remove %s", path, exc_info=True)
        return False
