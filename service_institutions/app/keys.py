"""
Marketplace verification key published at ``/.well-known/public-key.pem``.
"""

from pathlib import Path

from cryptography.hazmat.primitives import serialization

from shared.config import BaseConfig
from shared.errors import ConfigurationError, NotFoundError
from shared.logging import get_logger

logger = get_logger("institutions.keys")


def load_public_key_pem(config: BaseConfig) -> str:
    """Return the configured public key PEM, preferring the environment over the file.

    Raises NotFoundError when neither source exists and ConfigurationError
    when the PEM does not parse as a public key.
    """
    pem = config.public_key_pem
    if pem:
        # Single-line env values carry escaped newlines.
        pem = pem.replace("\\n", "\n").strip()
        source = "env"
    else:
        path = Path(config.public_key_path)
        if not path.is_file():
            raise NotFoundError("Public key not configured", code="PUBLIC_KEY_NOT_FOUND")
        pem = path.read_text(encoding="utf-8").strip()
        source = str(path)

    try:
        serialization.load_pem_public_key(pem.encode("utf-8"))
    except ValueError as e:
        logger.error("Malformed public key", source=source, error=str(e))
        raise ConfigurationError("Configured public key is malformed", code="PUBLIC_KEY_MALFORMED")

    return pem + "\n"
