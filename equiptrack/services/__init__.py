"""
EquipTrack service layer.

Services own every database write and every commit; blueprints only parse
input, call a service and serialise the result.
"""
