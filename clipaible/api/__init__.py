"""HTTP surface for the clip pipeline."""
