"""Configuration for the run log pipeline."""
