"""
LDAP Reconcile - Keep an LDAP directory consistent with organizational sources.

This package builds department trees and staff rosters from HR/IM platforms and
the internal relational store, and converges the LDAP directory to them.
"""

__version__ = "1.0.0"
__author__ = "LDAP Reconcile Team"
