"""HTTP boundary for the webhook pipeline."""
