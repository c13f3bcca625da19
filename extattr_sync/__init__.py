"""
Extension Attribute Sync - copy extensionAttribute1-15 from Active Directory
computer objects to the matching Entra ID device objects.

This package reads computer accounts over LDAP, matches each one to a cloud
device through Microsoft Graph, and previews or applies the attribute changes.
"""

__version__ = "1.0.0"
__author__ = "Extension Attribute Sync Team"
