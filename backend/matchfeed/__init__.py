"""Match scoring and feed ranking backend."""
