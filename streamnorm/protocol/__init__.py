"""Worker protocol for driving stream normalization over stdio."""
