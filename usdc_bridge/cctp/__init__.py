"""Circle CCTP burn-attest-mint transfers between Base and Aptos."""
