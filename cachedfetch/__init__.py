from .cache import Cache, FileCache, HttpAwareCache, MemoryCache, max_age, request_key, until
from .client import FetchClient
from .config import ClientConfiguration
from .decoding import TypedJSONDecoder, decoder_for, parse_datetime
from .errors import (CacheError, CacheExpired, CacheMiss, Cancelled, DecodeError, DecodingError, EmptyBody,
                     FetchError, HTTPError, NoResponse, NonHTTPResponse, TransportError)
from .model import CacheEntry, CacheMode, HTTPMethod, Request, Resource, Response
from .orchestrator import CacheDecision, FetchOrchestrator, State
from .result import Failure, Result, Success
from .transport import CachedHTTPAdapter, Transport, TransportDelegate, TransportTask
from .url import UNRESERVED, build_url, percent_encode
