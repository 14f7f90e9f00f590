"""Cross-chain USDC transfers over Circle CCTP."""
