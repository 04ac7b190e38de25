"""Generation service integration: Replicate client, retry policy and pricing."""
