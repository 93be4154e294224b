"""Wire models for the relayer HTTP surface."""
