"""Stage plumbing, fan-out and ordered shutdown of the collection pipeline."""
