"""Services used by the deployment engine."""
