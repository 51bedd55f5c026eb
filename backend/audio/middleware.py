"""
Access logging middleware for stream and download requests.
"""
import time
import logging

logger = logging.getLogger(__name__)


class StreamAccessLogMiddleware:
    """
    Log timing of audio delivery requests.

    Captures:
    - HTTP method and path
    - Requested byte range
    - Response status code and length
    - Time until the response object was ready (body streaming excluded)

    Only paths under LOGGED_PATHS are logged.
    """

    LOGGED_PATHS = ['/api/stream/', '/api/download/']
    SLOW_THRESHOLD_MS = 2000

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if not self.should_log(request.path):
            return self.get_response(request)

        start_time = time.time()
        response = self.get_response(request)
        duration_ms = int((time.time() - start_time) * 1000)

        # Logging failure must never fail the request
        try:
            self._log_access(request, response, duration_ms)
        except Exception as e:
            logger.error(f"Failed to log stream access: {e}")

        if duration_ms > self.SLOW_THRESHOLD_MS:
            logger.warning(
                f"Slow audio request: {request.method} {request.path} "
                f"took {duration_ms}ms"
            )

        return response

    def should_log(self, path):
        return any(path.startswith(p) for p in self.LOGGED_PATHS)

    def _log_access(self, request, response, duration_ms):
        range_header = request.META.get('HTTP_RANGE') or '-'
        length = response.get('Content-Length', '-')
        logger.info(
            f"{request.method} {request.path} range={range_header} "
            f"status={response.status_code} length={length} "
            f"client={self._get_client_ip(request)} {duration_ms}ms"
        )

    def _get_client_ip(self, request):
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if x_forwarded_for:
            return x_forwarded_for.split(',')[0].strip()
        return request.META.get('REMOTE_ADDR') or '-'
