"""Activity-gated WAV capture: detector, encoder and capture daemon."""
