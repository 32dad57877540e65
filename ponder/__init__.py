"""ponder: a streaming command-line assistant that shows its reasoning."""
