"""Pre-trade risk controls."""
