"""Exchange gateways."""
