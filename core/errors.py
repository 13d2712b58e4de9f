from __future__ import annotations


class ScreenerError(Exception):
    category = 'internal'

    def __init__(self, message: str = '') -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'category': self.category, 'message': self.message}


class FetchError(ScreenerError):
    category = 'network'


class FeedParseError(FetchError):
    category = 'parse'


class NotFoundError(ScreenerError):
    category = 'not_found'


class InvalidInputError(ScreenerError):
    category = 'invalid_input'


class DownloadError(ScreenerError):
    category = 'download'
