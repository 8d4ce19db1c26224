"""HR/IM platform integrations."""

from .base import LeaverListingUnsupported, SourceAPIBase, SourceAuthenticationError

__all__ = ['SourceAPIBase', 'SourceAuthenticationError', 'LeaverListingUnsupported']
