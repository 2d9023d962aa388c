"""
Constants used across the leaderboard and achievement engine.
"""

# Leaderboards
LEADERBOARD_SIZE = 10  # entries kept in each leaderboard's top list
RANKED_HOLE_COUNT = 18  # only full rounds participate in regional ranking

# Tier thresholds (distinct courses where the user holds rank 1)
ACE_LOWMAN_COUNT = 3
SCRATCH_LOWMAN_COUNT = 2

# Handicap
DIFFERENTIAL_WINDOW = 20  # most recent rounds considered
MIN_SLOPE_RATING = 55
MAX_SLOPE_RATING = 155
STANDARD_SLOPE = 113
MAX_HANDICAP_INDEX = 54.0
# 18-hole cards below this fraction of the course rating are scored as 9 holes
SUSPICIOUS_SCORE_RATIO = 0.75

# Outings
NOT_STARTED_POSITION = "-"
DEFAULT_COURSE_PAR = 72
