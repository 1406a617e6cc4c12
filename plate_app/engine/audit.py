from datetime import datetime
from pathlib import Path
import hashlib
import logging
import platform

logger = logging.getLogger(__name__)


def start_audit() -> list[str]:
    return [f"Session start: {datetime.now().isoformat()}",
            f"Platform: {platform.platform()}" ]

def log_step(audit: list[str], msg: str):
    logger.info(msg)
    audit.append(msg)

def source_hash(path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()
