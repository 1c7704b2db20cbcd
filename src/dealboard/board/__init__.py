"""Deal board state and its optimistic sync engine."""
