"""Service registry tests and their in-memory library fakes."""
