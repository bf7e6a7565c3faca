"""Domain engines: lives, reading flow, progress, approval, practice history, vocabulary and interview practice."""
