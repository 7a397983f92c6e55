from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

uploads_registered_total = Counter("uploads_registered_total", "Total uploads registered")
chunks_appended_total = Counter("chunks_appended_total", "Total chunks accepted")
bytes_appended_total = Counter("bytes_appended_total", "Total chunk bytes accepted")
chunk_append_failures_total = Counter("chunk_append_failures_total", "Total failed chunk writes")
uploads_finalized_total = Counter("uploads_finalized_total", "Total uploads finalized")
finalize_failures_total = Counter("finalize_failures_total", "Total failed finalize attempts")
chunk_cleanup_failures_total = Counter("chunk_cleanup_failures_total", "Total chunk files left behind after finalize")

open_uploads = Gauge("open_uploads", "Uploads currently accepting chunks")

chunk_write_latency_seconds = Histogram("chunk_write_latency_seconds", "Chunk storage write latency in seconds")
assembly_latency_seconds = Histogram("assembly_latency_seconds", "Artifact assembly latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
