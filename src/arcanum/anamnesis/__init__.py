"""
Anamnesis - Session memory for Arcanum.

Remembers which contract the current session is operating on.
"""
