"""
CrossVault — cross-account secret replication.

Reads a secret from a vault in one trust domain, plans the grants a
replica in another domain must carry, and keeps the replica's value and
policies convergent with the source, one idempotent pass at a time.
"""

import os

__version__ = "0.1.0"

CROSSVAULT_HOME = os.environ.get("CROSSVAULT_HOME", "~/.crossvault")
