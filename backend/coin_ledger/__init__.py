"""
Coin Ledger Module
Coin and resource balances for hosting dashboard accounts

This module provides:
- Account balances (coins + six provisionable resources)
- Resource and plan purchases priced in coins
- Admin grants, bans and settings
- Daily coin claims
- AFK coin accrual over a WebSocket push channel
- Versioned (compare-and-set) writes so concurrent mutations never lose updates

Collections used:
- ledger_accounts: One document per account, keyed by email
- ledger_bans: Ban reasons, keyed by email
- ledger_admins: Admin flags, keyed by email
- ledger_settings: Process-wide settings singleton
- ledger_journal: Immutable log of successful mutations
"""

__version__ = "1.0.0"
