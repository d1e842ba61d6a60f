"""
shadowcrypt: end-to-end content encryption for Shadowchain.

Your commits and posts live on public storage and a public ledger.
Only you hold the key that opens them.

Hybrid encryption, password-protected key vaults, and an audited
public-key registry in one small core.
"""

import os

__version__ = "0.1.0"
__author__ = "Shadowchain"

SHADOWCRYPT_HOME = os.environ.get("SHADOWCRYPT_HOME", "~/.shadowcrypt")
