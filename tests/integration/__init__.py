"""Cross-module startup tests for the messenger runtime."""
