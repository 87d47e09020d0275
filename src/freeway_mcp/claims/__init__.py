"""Content claims: reading them and resolving CIDs through them.

The resolver is built per resolution session and caches index entries
for every block it discovers while reading claims.
"""

from freeway_mcp.claims.client import ClaimsReader, ContentClaimsClient
from freeway_mcp.claims.resolver import ContentClaimsIndex

__all__ = ["ClaimsReader", "ContentClaimsClient", "ContentClaimsIndex"]
