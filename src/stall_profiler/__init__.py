"""Profile unresponsive targets and find what stalled them."""
