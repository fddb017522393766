"""
Strava service constants
"""

TOKEN_URL = "https://www.strava.com/oauth/token"
DEAUTHORIZE_URL = "https://www.strava.com/oauth/deauthorize"

# Page size and page cap for activity lists during backfill
ACTIVITIES_PER_PAGE = 50
MAX_ACTIVITY_PAGES = 50

# sport_type values that count as rides; everything else is discarded
CYCLING_SPORT_TYPES = frozenset({
    "Ride",
    "MountainBikeRide",
    "GravelRide",
    "VirtualRide",
    "EBikeRide",
    "EMountainBikeRide",
    "Handcycle",
})
