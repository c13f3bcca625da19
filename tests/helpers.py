"""Shared builders for test records."""

from extattr_sync.models import LocalObject, RemoteDevice


def make_local(account_name='WKS01$', sid=None, slots=None, dn=None):
    """Build a LocalObject with the given slot values (others unset)."""
    name = account_name.rstrip('$')
    return LocalObject(
        distinguished_name=dn or f"CN={name},OU=Workstations,DC=corp,DC=example,DC=com",
        name=name,
        account_name=account_name,
        security_identifier=sid,
        attribute_slots=slots or {}
    )


def make_device(device_id='dev-1', display_name='WKS01', sid=None):
    return RemoteDevice(id=device_id, display_name=display_name, security_identifier=sid)
