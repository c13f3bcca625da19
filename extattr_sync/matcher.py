"""
Identity matching between local computer objects and cloud devices.

Two tiers, first success wins:

1. on-premises security identifier (exact match)
2. account name without the trailing "$", against the device display name

If two devices share a display name the remote directory's own ordering
decides which one is returned. Ambiguity is not detected.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from extattr_sync.graph_client import RemoteAPIError, RemoteAuthenticationError, RemoteDirectoryClient
from extattr_sync.models import LocalObject, RemoteDevice

logger = logging.getLogger(__name__)

ACCOUNT_SUFFIX = '$'
TIER_SECURITY_IDENTIFIER = 'security identifier'
TIER_DISPLAY_NAME = 'display name'


@dataclass(frozen=True)
class MatchResult:
    device: RemoteDevice
    tier: str


def strip_account_suffix(account_name: str) -> str:
    """Remove one trailing "$" from a computer account name (WKS01$ -> WKS01)."""
    if account_name.endswith(ACCOUNT_SUFFIX):
        return account_name[:-len(ACCOUNT_SUFFIX)]
    return account_name


class IdentityMatcher:
    """Finds the cloud device that corresponds to a local computer object."""

    def __init__(self, remote_client: RemoteDirectoryClient):
        """
        Args:
            remote_client: Client bound to an acquired Graph session
        """
        self.remote_client = remote_client

    def find_remote_match(self, local: LocalObject) -> Optional[MatchResult]:
        """
        Find the device for a local object.

        A failed query counts as "no match" for its tier, so a remote outage
        yields None rather than an exception. A rejected session (HTTP 401)
        is not a missing device and propagates.

        Args:
            local: Local computer object

        Returns:
            MatchResult with the device and the tier that matched, or None

        Raises:
            RemoteAuthenticationError: If the token was rejected
        """
        if local.security_identifier:
            device = self._query(
                TIER_SECURITY_IDENTIFIER, local,
                self.remote_client.find_device_by_security_identifier, local.security_identifier
            )
            if device:
                return MatchResult(device, TIER_SECURITY_IDENTIFIER)

        display_name = strip_account_suffix(local.account_name or '')
        if not display_name:
            logger.debug(f"No account name to match for {local.distinguished_name}")
            return None

        device = self._query(
            TIER_DISPLAY_NAME, local,
            self.remote_client.find_device_by_display_name, display_name
        )
        if device:
            return MatchResult(device, TIER_DISPLAY_NAME)

        logger.debug(f"No remote device matches {local.account_name}")
        return None

    def _query(self, tier: str, local: LocalObject, lookup, value: str) -> Optional[RemoteDevice]:
        try:
            device = lookup(value)
        except RemoteAuthenticationError:
            raise
        except RemoteAPIError as e:
            logger.warning(f"Device lookup by {tier} failed for {local.account_name}: {e}")
            return None

        if device:
            logger.debug(f"Matched {local.account_name} to device {device.id} by {tier}")
        return device
