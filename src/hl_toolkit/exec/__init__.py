"""Order sizing, pricing, sequencing and response decoding."""
