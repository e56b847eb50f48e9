"""Error types raised by the capture, merge and duplicate-check pipeline."""


class CaptureError(Exception):
    status_code = 500
    error = 'Capture failed'

    def __init__(self, details=None):
        super().__init__(details or self.error)
        self.details = details or self.error

    def to_dict(self):
        return {'error': self.error, 'details': self.details}


class InvalidToken(CaptureError):
    """Malformed, unknown, stale-generation or expired capture token."""
    status_code = 401
    error = 'Invalid capture token'

    def __init__(self, details=None):
        super().__init__(details or 'Capture token is invalid or expired. Please regenerate it from your dashboard.')


class SessionNotFound(CaptureError):
    """Covers not-yet-delivered, consumed, expired, foreign and unknown sessions."""
    status_code = 404
    error = 'Capture not found'

    def __init__(self, details=None):
        super().__init__(details or 'Capture not received')


class DuplicateConflict(CaptureError):
    status_code = 409
    error = 'Duplicate item'

    def __init__(self, duplicate_type, matches, candidate):
        if duplicate_type == 'exact':
            details = 'This item is already in your wishlist'
        else:
            details = 'Similar item(s) found in your wishlist'
        super().__init__(details)
        self.duplicate_type = duplicate_type
        self.matches = matches
        self.candidate = candidate

    def to_dict(self):
        body = super().to_dict()
        body.update({
            'duplicateType': self.duplicate_type,
            'matches': self.matches,
            'candidate': self.candidate,
        })
        return body


class RateLimited(CaptureError):
    status_code = 429
    error = 'Rate limit exceeded'


class OutOfRangeField(ValueError):
    """A recognised value outside its plausible bounds; the field is dropped."""

    def __init__(self, field, value, low, high):
        super().__init__(f"Ignored implausible {field.replace('_', ' ')} of {value} (expected {low}-{high})")
        self.field = field
        self.value = value
