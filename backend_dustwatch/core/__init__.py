"""Core building blocks shared across the detection pipeline."""
