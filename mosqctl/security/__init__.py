"""Password hashing and TLS material for the managed broker."""
