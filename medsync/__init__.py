"""
medsync - Blockchain-to-Relational Synchronizer

Projects the events of an append-only on-chain medicine-inventory ledger
into a relational store (inventory, audit log, staff grants) and keeps a
durable cursor of how far it has read.
"""

__version__ = "0.1.0"
