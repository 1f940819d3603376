"""Fresh keypair generation for rotation."""

import logging
import uuid
from datetime import datetime, timezone

from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import CryptoError
from splurge_store_rotator.models import KeyPair

logger = logging.getLogger(__name__)


class KeyGenerator:
    """Produces keypairs that share nothing with any earlier key."""

    @staticmethod
    def new_keyring_id() -> str:
        """Sortable, collision-resistant keyring directory name."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        return f"{stamp}-{uuid.uuid4().hex[:8]}"

    def generate(self, *, exclude: set[str] | None = None) -> KeyPair:
        """Generate a keypair whose recipient is not in ``exclude``.

        Args:
            exclude: Recipients already in use (the current active one at least)

        Raises:
            CryptoError: If generation fails or collides with an existing key
        """
        keypair = CryptoUtils.generate_keypair()
        if exclude and keypair.recipient in exclude:
            raise CryptoError("Generated keypair collides with an existing recipient")

        logger.info(
            f"Generated new recipient {keypair.recipient}",
            extra={"event": "keypair_generated", "recipient": keypair.recipient},
        )
        return keypair
