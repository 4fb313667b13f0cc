"""
Location Services Module

Distance calculations, unit routing and reverse geocoding for incidents.
Routing provider: Google Directions (optional), straight line fallback
Geocoding provider: OpenStreetMap Nominatim

Usage:
    from resq.services.location.distance import haversine_m
    from resq.services.location.route import plan_route
    from resq.services.location.geocoding import reverse_geocode
"""
