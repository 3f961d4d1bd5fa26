"""Transport package - per-project request client, event stream and supervisor."""
