"""Airdrop planning and batched execution."""
