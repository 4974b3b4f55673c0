"""Four-stage system prompt generation pipeline."""
