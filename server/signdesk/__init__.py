"""SignDesk: agreement lifecycle orchestration for e-signature providers."""
