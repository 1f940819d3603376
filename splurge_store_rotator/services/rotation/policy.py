"""Staging the recipient map for a new keypair."""

import logging

from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import ConfigurationError
from splurge_store_rotator.models import RecipientMap, RecipientRule, SecretStore

logger = logging.getLogger(__name__)


class RecipientMapUpdater:
    """Derives the staged policy that replaces one recipient with another."""

    def stage(
        self,
        live_map: RecipientMap,
        old_recipient: str,
        new_recipient: str
    ) -> RecipientMap:
        """Return a new map where ``old_recipient`` is replaced by ``new_recipient``.

        Rule order and path patterns are preserved. Co-recipients are kept,
        and duplicates introduced by the substitution are dropped.

        Raises:
            ConfigurationError: If no rule names the old recipient
        """
        if old_recipient == new_recipient:
            raise ConfigurationError("New recipient must differ from the active recipient")
        if old_recipient not in live_map.all_recipients():
            raise ConfigurationError(
                f"Active recipient {old_recipient} does not appear in the recipient map"
            )

        staged_rules = []
        for rule in live_map.rules:
            recipients: list[str] = []
            for recipient in rule.recipients:
                replacement = new_recipient if recipient == old_recipient else recipient
                if replacement not in recipients:
                    recipients.append(replacement)
            staged_rules.append(RecipientRule(path_regex=rule.path_regex, recipients=recipients))

        staged = RecipientMap(rules=staged_rules, version=live_map.version)
        logger.debug(
            "Staged recipient map",
            extra={"event": "policy_staged", "rules": len(staged_rules)},
        )
        return staged

    @staticmethod
    def preflight(
        live_map: RecipientMap,
        old_recipient: str,
        stores: list[SecretStore]
    ) -> None:
        """Check the live policy can be staged for every store, before any mutation.

        Raises:
            ConfigurationError: If a rule names a malformed recipient, the
                active recipient is absent from the policy, or a store's rule
                does not name it
        """
        for rule in live_map.rules:
            for recipient in rule.recipients:
                if not CryptoUtils.is_valid_recipient(recipient):
                    raise ConfigurationError(
                        f"Rule {rule.path_regex!r} names an invalid recipient: {recipient}"
                    )
        if old_recipient not in live_map.all_recipients():
            raise ConfigurationError(
                f"Active recipient {old_recipient} does not appear in the recipient map"
            )
        for store in stores:
            if old_recipient not in live_map.recipients_for(store.path):
                raise ConfigurationError(
                    f"Store {store.path} is not governed by the active recipient"
                )

    @staticmethod
    def resolve_targets(
        staged_map: RecipientMap,
        stores: list[SecretStore],
        new_recipient: str
    ) -> dict[str, frozenset[str]]:
        """Resolve every store's staged recipients before anything is touched.

        Each store must be addressed to the new recipient, otherwise the new
        identity could not verify its re-encrypted ciphertext.

        Raises:
            ConfigurationError: If a store matches no rule or its rule omits
                the new recipient
        """
        targets = {}
        for store in stores:
            recipients = staged_map.recipients_for(store.path)
            if new_recipient not in recipients:
                raise ConfigurationError(
                    f"Store {store.path} is not governed by the active recipient"
                )
            targets[store.path] = recipients
        return targets
