"""
EquipTrack: HTTP blueprints.
"""
