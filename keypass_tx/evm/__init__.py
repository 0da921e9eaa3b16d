"""EVM chain support (Moonbeam)."""
