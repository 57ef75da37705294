"""NAS App Center application lifecycle task engine."""
