"""State package - reconciler, prompt queue and selection helpers."""
