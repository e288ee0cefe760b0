"""Live capture side: trace model, tracker boundary, capture automata, triggers."""
