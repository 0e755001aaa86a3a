"""Generation job store, queue, workers and orchestration."""
