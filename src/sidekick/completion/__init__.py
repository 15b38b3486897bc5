"""Inline completion: policy, prompt templates, cache, normalization, fallback."""
