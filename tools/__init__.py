"""Tree hashing core, manifest codec and desktop panel."""
