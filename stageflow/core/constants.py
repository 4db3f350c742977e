"""Application constants."""

# Day-based delays send at 9:00 tenant-local unless a time is configured
DEFAULT_SEND_AT_HOUR = 9
DEFAULT_SEND_AT_MINUTE = 0

# Drip campaigns use one fixed send time for every step
DEFAULT_CAMPAIGN_SEND_HOUR = 9
DEFAULT_CAMPAIGN_SEND_MINUTE = 0

# Validation bounds for configured delays
MAX_DELAY_DAYS = 730
MAX_CAMPAIGN_DAYS = 730

# Error messages stored on execution rows are truncated to this length
LAST_ERROR_MAX_LENGTH = 1000
