"""Dream interpretation knowledge retrieval engine."""
