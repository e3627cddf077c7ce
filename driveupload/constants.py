"""Protocol and tuning constants for the upload engine.

This module centralizes endpoints, size limits, and default tuning values so
configuration, dispatcher, and transfer code agree on the same numbers.
"""

KiB: int = 1024
MiB: int = 1024 * KiB
GiB: int = 1024 * MiB


# =============================================================================
# Endpoints
# =============================================================================

API_BASE_URL: str = "https://proapi.115.com"
UPLOAD_BASE_URL: str = "https://uplb.115.com"

# Quick-upload negotiation (encrypted form, key-exchange token in k_ec)
INIT_UPLOAD_URL: str = UPLOAD_BASE_URL + "/4.0/initupload.php"

# Inline ("sample") form upload
SAMPLE_INIT_UPLOAD_URL: str = UPLOAD_BASE_URL + "/3.0/sampleinitupload.php"

# Short-lived object-storage credentials
OSS_TOKEN_URL: str = UPLOAD_BASE_URL + "/3.0/gettoken.php"

# Uploader identity (user id + user key)
UPLOAD_INFO_URL: str = API_BASE_URL + "/app/uploadinfo"

# Open API listing / metadata / download
FILE_LIST_PATH: str = "/open/ufile/files"
FILE_INFO_PATH: str = "/open/folder/get_info"
DOWNLOAD_URL_PATH: str = "/open/ufile/downurl"

DEFAULT_OSS_ENDPOINT: str = "https://oss-cn-shenzhen.aliyuncs.com"
DEFAULT_OSS_REGION: str = "cn-shenzhen"


# =============================================================================
# Negotiation
# =============================================================================

# Salt mixed into the per-request token digest
TOKEN_SALT: str = "Qclm8MGWUv59TnrR0XPg"

# Target prefix for uploads into a directory
TARGET_PREFIX: str = "U_1_"

DEFAULT_APP_VERSION: str = "2.0.3.6"
DEFAULT_USER_AGENT: str = "Mozilla/5.0 115Browser/27.0.7.5"

# Server status codes carried in the negotiation response
STATUS_MUST_UPLOAD: int = 1
STATUS_EXISTS: int = 2
STATUS_SIGN_CHECK: int = 7

# statuscode values that are not errors
OK_STATUS_CODES = (0, 701)

ROOT_DIR_ID: str = "0"


# =============================================================================
# Size Limits
# =============================================================================

# Hard ceiling for any single upload
MAX_UPLOAD_SIZE: int = 115 * GiB

# Largest object the inline form path accepts
STREAM_UPLOAD_LIMIT: int = 5 * GiB

# Largest object a single PUT accepts
MAX_UPLOAD_CUTOFF: int = 5 * GiB

MIN_CHUNK_SIZE: int = 100 * KiB
MAX_CHUNK_SIZE: int = 5 * GiB

MAX_CONCURRENCY: int = 32


# =============================================================================
# Tuning Defaults
# =============================================================================

DEFAULT_HASH_MEMORY_THRESHOLD: int = 10 * MiB
DEFAULT_NOHASH_SIZE: int = 100 * MiB
DEFAULT_UPLOAD_CUTOFF: int = 50 * MiB
DEFAULT_CHUNK_SIZE: int = 10 * MiB
DEFAULT_MAX_UPLOAD_PARTS: int = 10000
DEFAULT_UPLOAD_CONCURRENCY: int = 8
DEFAULT_LIST_CHUNK: int = 1150

# Buffer size used while hashing and spilling
HASH_READ_SIZE: int = 1024 * 1024

TEMP_FILE_PREFIX: str = "driveupload-sha1sum-"


# =============================================================================
# Pacing and Retry
# =============================================================================

# Minimum spacing between API calls (seconds)
DEFAULT_API_MIN_SLEEP: float = 0.2

# Minimum spacing between download URL calls (seconds)
DEFAULT_DOWNLOAD_MIN_SLEEP: float = 0.5

# Object-storage part traffic is paced separately
DEFAULT_UPLOAD_MIN_SLEEP: float = 0.05

# Elapsed-time ceiling for a retried operation (seconds)
DEFAULT_RETRY_MAX_ELAPSED: float = 120.0
DEFAULT_RETRY_INITIAL_INTERVAL: float = 0.5
DEFAULT_RETRY_MAX_INTERVAL: float = 30.0
DEFAULT_RETRY_MULTIPLIER: float = 1.5
DEFAULT_RETRY_JITTER: float = 0.5

DEFAULT_HTTP_TIMEOUT: float = 60.0


# =============================================================================
# Cache Defaults
# =============================================================================

DEFAULT_CACHE_TTL: float = 300.0

# Download URLs are treated as expired this long before their embedded expiry
DOWNLOAD_URL_EXPIRY_DELTA: float = 60.0

# Object-storage credentials refresh this long before they expire
CREDENTIAL_REFRESH_MARGIN: float = 300.0
