"""HTTP surface of the Sketchworks service."""
