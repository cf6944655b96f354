"""
Pneuma - On-chain interaction layer for Arcanum.

Provides the JSON-RPC client, ABI/artifact handling, transaction utilities
and the shielded transaction client for a confidential EVM network.

Uses httpx + eth-account + eth-abi instead of the heavyweight web3.py.
"""
