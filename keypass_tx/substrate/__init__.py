"""Substrate chain support (KILT)."""
