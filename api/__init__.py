"""HTTP application assembly and request dependencies."""
