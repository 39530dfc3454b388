"""Per-type task handlers and the text utilities they share."""
