"""
Errors raised by steam_query

Everything derives from QueryError so callers can catch the whole family.
"""


class QueryError(Exception):
    """Base class for all query errors"""


class NotConnected(QueryError):
    """Operation attempted before connect() or after destroy()"""


class Timeout(QueryError, TimeoutError):
    """No matching response arrived before the deadline"""


class TransportError(QueryError):
    """The operating system reported a socket failure"""


class UnexpectedChallenge(QueryError):
    """The server demanded a challenge where none was acceptable"""


class WrongServerResponse(QueryError):
    """A stale or duplicated response arrived where fresh data was expected"""


class MalformedPage(QueryError):
    """A master server page whose length is not a multiple of the entry size"""


class MalformedResponse(QueryError):
    """A response that could not be decoded"""
