"""User-visible strings produced by the streaming engine."""

ERROR_PREFIX = "PAWS right there! We have hit a snag :("
API_ERROR = "API Error"
UNKNOWN_ERROR = "Unknown error"
NO_READABLE_STREAM = "No readable stream available"
RESPONSE_COMPLETED = "Response completed"
USER_CANCELED = "User canceled the request"
CONNECTION_LOST = "Connection lost during streaming."
CONNECTION_LOST_TIP = (
    "\U0001f4a1 Tip: The backend server at {backend_url} stopped or crashed, "
    "network connection was interrupted, or the backend server is no "
    "longer running."
)
STREAM_STALLED = "The response stream stalled: no data received for {seconds} seconds."

PROCESSING = "Processing..."
PROCESSING_RESULTS = "Processing results..."
PROCESSING_THINKING = "Processing thinking..."
CHART_ADDED = "Chart visualization added"
CITATION_PREFIX = "Citation: "
DEFAULT_REFERENCE_TITLE = "Reference"
