"""
LDAP client for the on-premises Active Directory side of the sync.

Enumerates computer objects and their extension attribute slots from a
container, and writes single attribute values back for the set-attributes
workflow.
"""

import ssl
import logging
from typing import Dict, List, Any, Iterable, Iterator, Optional
from ldap3 import Server, Connection, SUBTREE, LEVEL, ALL, Tls, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.protocol.formatters.formatters import format_sid

from extattr_sync.logging_setup import security_logger
from extattr_sync.retry import MaxRetriesExceeded, create_retry_callback, retry_call
from extattr_sync.models import (
    ALL_SLOTS,
    Enumeration,
    LocalObject,
    is_valid_slot,
    slot_attribute_name
)

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
COMPUTER_FILTER = '(objectClass=computer)'
IDENTITY_ATTRIBUTES = ['distinguishedName', 'name', 'sAMAccountName', 'objectSid']
SLOT_ATTRIBUTES = [slot_attribute_name(slot) for slot in ALL_SLOTS]


class LDAPConnectionError(Exception):
    """The LDAP session could not be opened or bound."""
    pass


class LDAPQueryError(Exception):
    """A directory read could not be performed."""
    pass


def domain_root_to_dn(domain_root: str) -> str:
    """
    Normalize a domain root to DN form.

    Accepts either a DN ("DC=corp,DC=example") or a DNS name ("corp.example").
    """
    domain_root = (domain_root or '').strip()
    if not domain_root:
        return ''
    if '=' in domain_root:
        return ','.join(part.strip() for part in domain_root.split(','))
    return ','.join(f"DC={label}" for label in domain_root.strip('.').split('.') if label)


def discover_default_containers(domain_root: str) -> List[str]:
    """
    Derive the default containers to sync when none are configured.

    Args:
        domain_root: Domain root as a DN or DNS name

    Returns:
        The well-known Computers container of the domain, or an empty list
        when no domain root is known
    """
    root_dn = domain_root_to_dn(domain_root)
    if not root_dn:
        return []
    return [f"CN=Computers,{root_dn}"]


class LDAPClient:
    """
    LDAP client for reading and writing computer objects in Active Directory.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Read connection, TLS and paging settings.

        Args:
            config: The ldap configuration section
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn', '')
        self.search_filter = config.get('search_filter', COMPUTER_FILTER)

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Open and bind the LDAP session, retrying transient failures.

        Args:
            max_retries: Bind attempts to make (config value when None)
            retry_wait: Fixed wait in seconds between attempts (config value when None)

        Raises:
            LDAPConnectionError: If the server definition is invalid or every
                attempt failed
        """
        attempts = max_retries or self.max_retries
        wait = self.retry_wait if retry_wait is None else retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Invalid LDAP server definition {self.server_url}: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=attempts,
                delay=wait,
                exceptions=(LDAPException, LDAPConnectionError),
                on_retry=create_retry_callback(f"LDAP bind to {self.server_url}")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Could not bind to {self.server_url} after {e.attempts} attempts: {e.last_exception}"
            )
        except Exception as e:
            logger.error(f"LDAP connection to {self.server_url} aborted: {e}")
            raise LDAPConnectionError(str(e))

        self._connected = True
        logger.info(f"Bound to {self.server_url} as {self.bind_dn}")
        return True

    def _open_and_bind(self):
        """One connection attempt: open, optional StartTLS, simple bind."""
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            self.connection.open()
            if self.start_tls and not self.use_ssl and not self.connection.start_tls():
                raise LDAPConnectionError(f"StartTLS rejected: {self.connection.result}")
            if not self.connection.bind():
                security_logger.log_authentication_attempt('ldap', self.bind_dn, False)
                raise LDAPBindError(f"Bind rejected: {self.connection.result}")
        except Exception:
            self._discard_connection()
            raise
        security_logger.log_authentication_attempt('ldap', self.bind_dn, True)

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind error on failed connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """Build the ldap3 Tls settings; None for a plain ldap:// session."""
        if not (self.use_ssl or self.start_tls):
            return None

        options: Dict[str, Any] = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            security_logger.log_security_event("LDAP certificate verification disabled", self.server_url)
        if self.ca_cert_file:
            options['ca_certs_file'] = self.ca_cert_file
        if self.cert_file and self.key_file:
            options['local_certificate_file'] = self.cert_file
            options['local_private_key_file'] = self.key_file

        try:
            return Tls(**options)
        except Exception as e:
            raise LDAPConnectionError(f"Invalid LDAP TLS settings: {e}")

    def disconnect(self):
        """Unbind and forget the session."""
        if not (self.connection and self._connected):
            return
        try:
            self.connection.unbind()
            logger.debug(f"Unbound from {self.server_url}")
        except Exception as e:
            logger.warning(f"Error unbinding from {self.server_url}: {e}")
        finally:
            self._connected = False
            self.connection = None

    def enumerate_computers(self, container: str, recursive: bool = True) -> Enumeration:
        """
        Read every computer object in a container.

        Args:
            container: Distinguished name of the OU or container
            recursive: Search the whole subtree instead of immediate children only

        Returns:
            Enumeration with the objects found, or with an error diagnostic and
            no objects if the container could not be read
        """
        scope = SUBTREE if recursive else LEVEL
        logger.info(f"Enumerating computers in {container} ({'subtree' if recursive else 'one level'})")

        try:
            if not self._connected:
                raise LDAPQueryError("Not connected to LDAP server")

            objects = []
            skipped = []
            for entry in self._paged_search(container, scope, IDENTITY_ATTRIBUTES + SLOT_ATTRIBUTES):
                try:
                    objects.append(self._to_local_object(entry))
                except Exception as e:
                    dn = getattr(entry, 'entry_dn', '?')
                    logger.warning(f"Cannot read attributes of {dn}: {e}")
                    skipped.append(f"{dn}: {e}")

        except (LDAPException, LDAPQueryError) as e:
            logger.error(f"Failed to enumerate {container}: {e}")
            return Enumeration(container=container, error=str(e))
        except Exception as e:
            logger.error(f"Unexpected error enumerating {container}: {e}")
            return Enumeration(container=container, error=f"Unexpected error: {e}")

        logger.info(f"Found {len(objects)} computers in {container}"
                    + (f", {len(skipped)} unreadable" if skipped else ""))
        return Enumeration(container=container, objects=objects, skipped=skipped)

    def enumerate_containers(self, containers: Iterable[str], recursive: bool = True) -> Iterator[Enumeration]:
        """Enumerate several containers, continuing past any that fail."""
        for container in containers:
            yield self.enumerate_computers(container, recursive)

    def _paged_search(self, search_base: str, scope, attributes: List[str]) -> Iterator[Any]:
        """Run a paged search and yield entries page by page."""
        cookie = None
        page_count = 0

        while True:
            success = self.connection.search(
                search_base=search_base,
                search_filter=self.search_filter,
                search_scope=scope,
                attributes=attributes,
                paged_size=self.page_size,
                paged_cookie=cookie
            )
            if not success and self.connection.result.get('result') not in (0, None):
                raise LDAPQueryError(f"Search failed: {self.connection.result.get('description')} "
                                     f"{self.connection.result.get('message', '')}".strip())

            page_count += 1
            entries = list(self.connection.entries)
            logger.debug(f"Page {page_count}: {len(entries)} entries")
            for entry in entries:
                yield entry

            controls = self.connection.result.get('controls') or {}
            cookie = controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
            if not cookie:
                break

    def _to_local_object(self, entry) -> LocalObject:
        """Convert an LDAP entry into a LocalObject; slots with no value stay unset."""
        attributes = {name.lower(): values for name, values in entry.entry_attributes_as_dict.items()}

        def first(name):
            values = attributes.get(name.lower()) or []
            return values[0] if values else None

        slots = {}
        for slot in ALL_SLOTS:
            value = first(slot_attribute_name(slot))
            slots[slot] = None if value is None else str(value)

        sid = first('objectSid')
        if isinstance(sid, (bytes, bytearray)):
            sid = format_sid(bytes(sid))

        dn = str(entry.entry_dn)
        account_name = first('sAMAccountName')
        name = first('name')
        return LocalObject(
            distinguished_name=dn,
            name=str(name) if name is not None else '',
            account_name=str(account_name) if account_name is not None else '',
            security_identifier=str(sid) if sid else None,
            attribute_slots=slots
        )

    def write_attribute(self, object_dn: str, slot: int, value: Optional[str]) -> bool:
        """
        Set or clear one extension attribute on a local object.

        Args:
            object_dn: Distinguished name of the computer object
            slot: Slot index 1..15
            value: New value; None or empty clears the attribute

        Returns:
            True if the directory accepted the change, False otherwise
        """
        if not is_valid_slot(slot):
            logger.error(f"Invalid extension attribute slot {slot!r} for {object_dn}")
            return False

        attribute = slot_attribute_name(slot)
        values = [value] if value else []
        action = f"{attribute}='{value}'" if value else f"clear {attribute}"

        try:
            if not self._connected:
                raise LDAPQueryError("Not connected to LDAP server")

            success = self.connection.modify(object_dn, {attribute: [(MODIFY_REPLACE, values)]})
        except (LDAPException, LDAPQueryError) as e:
            logger.error(f"Failed to write {action} on {object_dn}: {e}")
            security_logger.log_attribute_write('ldap', object_dn, action, False)
            return False

        if not success:
            result = self.connection.result or {}
            logger.error(f"Directory rejected {action} on {object_dn}: "
                         f"{result.get('description', 'unknown')} {result.get('message', '')}".strip())
            security_logger.log_attribute_write('ldap', object_dn, action, False)
            return False

        logger.info(f"Wrote {action} on {object_dn}")
        security_logger.log_attribute_write('ldap', object_dn, action, True)
        return True

    def get_domain_root(self) -> str:
        """
        Determine the domain root DN.

        Uses the configured base_dn, then the DC components of the bind DN,
        then the server's default naming context.

        Raises:
            LDAPQueryError: If no domain root can be determined
        """
        if self.base_dn:
            return self.base_dn

        if 'DC=' in self.bind_dn.upper():
            dc_parts = [part.strip() for part in self.bind_dn.split(',')
                        if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info:
            default_context = (self.server.info.other or {}).get('defaultNamingContext')
            if default_context:
                return default_context[0]
            if self.server.info.naming_contexts:
                return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
