"""Durable workflows: classification, review, completion and their substrate."""
