"""
Garmin service constants
"""
import re

ACTIVITY_DETAIL_PATH = "/rest/activityFile/{summary_id}"
ACTIVITIES_PATH = "/rest/activities"
USER_REGISTRATION_PATH = "/rest/user/registration"

# Access tokens without an expires_in are assumed to live this long
DEFAULT_TOKEN_TTL_SECONDS = 3600

# Permission required to receive activity data
ACTIVITY_EXPORT_PERMISSION = "ACTIVITY_EXPORT"

# "... min start time of 2023-01-15T00:00:00Z" in a 400 errorMessage
MIN_START_TIME_PATTERN = re.compile(r"min start time of ([0-9T:.\-]+Z)")

# activityType values (lowercased, spaces as underscores) that count as rides
CYCLING_ACTIVITY_TYPES = frozenset({
    "cycling",
    "bmx",
    "cyclocross",
    "downhill_biking",
    "e_bike_fitness",
    "e_bike_mountain",
    "e_enduro_mtb",
    "enduro_mtb",
    "gravel_cycling",
    "indoor_cycling",
    "mountain_biking",
    "recumbent_cycling",
    "road_biking",
    "track_cycling",
    "virtual_ride",
    "handcycling",
    "indoor_handcycling",
})
