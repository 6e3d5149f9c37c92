"""User operation lifecycle tracking for an ERC-4337 bundler."""
