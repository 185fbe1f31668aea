"""Runtime status surfaces for the manager."""
