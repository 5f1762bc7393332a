"""
Migration control: registry, index verification, batch executor, monitoring,
rollback and legacy cleanup.
"""
