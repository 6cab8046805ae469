from typing import Optional

from .errors import EmptyBody, HTTPError, NoResponse, NonHTTPResponse, TransportError
from .model import Response
from .result import Failure, Result, Success


def classify(body: Optional[bytes], response: Optional[Response], error: Optional[BaseException]) -> Result:
    """
    Turn the pieces of a finished exchange into a `Success` carrying the body, or a `Failure` carrying a `FetchError`.

    The status code is checked before the body, so a non-2xx response with an empty body is an `HTTPError`.
    """
    if error is not None:
        return Failure(TransportError(error))

    if response is None:
        return Failure(NoResponse())

    if response.status is None:
        return Failure(NonHTTPResponse(response))

    if not 200 <= response.status < 300:
        return Failure(HTTPError(response.status, body, response))

    if not body:
        return Failure(EmptyBody(response.status, response))

    return Success(bytes(body))
