from dataclasses import dataclass
from urllib import parse
import datetime
import logging
import math
import re
import sys

from pythonjsonlogger.json import JsonFormatter

ALLOWED_EXTENSIONS = frozenset([
    # JPEG
    'jpg',
    'jpeg',
    # PNG
    'png',
    # WEBP
    'webp',
    # GIF
    'gif',
    # AVIF
    'avif',
    # TIFF
    'tif',
    'tiff',
    # SVG
    'svg',
])

ALLOWED_MIN_DIMENSION = 4
ALLOWED_MAX_DIMENSION = 4096

uri_re = re.compile(r'(.*)/([^/]*)\.([^/]*)')
number_re = re.compile(r'[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?|[+-]?Infinity', re.ASCII)


class ImageUriFormatter(JsonFormatter):

    def __init__(self):
        super().__init__(json_ensure_ascii=False)

    def add_fields(self, log_record, record, message_dict):
        log_record['_ts'] = datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
        log_record['level'] = record.levelname
        super().add_fields(log_record, record, message_dict)


def init_logging(level=logging.INFO):
    """
    CloudWatch로 나가는 JSON 로거 설정
    """
    log = logging.getLogger(__name__)
    log.setLevel(level)
    for h in list(log.handlers):
        log.removeHandler(h)

    log_handler = logging.StreamHandler(sys.stderr)
    log_handler.setFormatter(ImageUriFormatter())
    log.addHandler(log_handler)
    log.propagate = False
    return log


logger = init_logging()


class MalformedEventError(ValueError):
    """
    CloudFront event 구조 자체가 깨졌을 때
    """


@dataclass(frozen=True)
class RewriteConfig:
    allowed_extensions: frozenset = ALLOWED_EXTENSIONS
    min_width: int = ALLOWED_MIN_DIMENSION
    max_width: int = ALLOWED_MAX_DIMENSION
    min_height: int = ALLOWED_MIN_DIMENSION
    max_height: int = ALLOWED_MAX_DIMENSION

    def __post_init__(self):
        if isinstance(self.allowed_extensions, str):
            raise ValueError(f'allowed_extensions must be a collection, not a str: {self.allowed_extensions!r}')
        if self.min_width > self.max_width:
            raise ValueError(f'min_width {self.min_width} > max_width {self.max_width}')
        if self.min_height > self.max_height:
            raise ValueError(f'min_height {self.min_height} > max_height {self.max_height}')
        # 비교는 소문자로 한다
        object.__setattr__(
            self, 'allowed_extensions', frozenset(e.lower() for e in self.allowed_extensions))


DEFAULT_CONFIG = RewriteConfig()


@dataclass(frozen=True)
class ParsedPath:
    directory: str
    stem: str
    extension: str


class QueryParams:
    """
    width/height 값을 꺼내는 공통 인터페이스
    """

    def get_value(self, name):
        raise NotImplementedError


class QueryStringParams(QueryParams):
    """
    Lambda@Edge: querystring이 raw 문자열 ("width=300&height=200")
    """

    def __init__(self, querystring):
        self.params = parse.parse_qs(querystring, keep_blank_values=True)

    def get_value(self, name):
        values = self.params.get(name)
        if not values:
            return None
        return values[0]


class QueryObjectParams(QueryParams):
    """
    CloudFront Functions: {"width": {"value": "300", "multiValue": [...]}}
    """

    def __init__(self, querystring):
        self.params = querystring

    def get_value(self, name):
        entry = self.params.get(name)
        if entry is None:
            return None
        if not isinstance(entry, dict):
            raise MalformedEventError(f'query parameter {name!r} is not an object: {entry!r}')

        value = entry.get('value')
        if value is None and entry.get('multiValue'):
            first = entry['multiValue'][0]
            if not isinstance(first, dict):
                raise MalformedEventError(f'query parameter {name!r} multiValue is not an object: {first!r}')
            value = first.get('value')
        if value is not None and not isinstance(value, str):
            raise MalformedEventError(f'query parameter {name!r} value is not a string: {value!r}')
        return value


def get_query_params(querystring):
    """
    event 형태에 맞는 QueryParams adapter 선택
    """
    if isinstance(querystring, str):
        return QueryStringParams(querystring)
    if isinstance(querystring, dict):
        return QueryObjectParams(querystring)
    raise MalformedEventError(f'unsupported querystring type: {type(querystring).__name__}')


def parse_uri(uri):
    """
    uri를 directory / stem / extension으로 분리, 매칭 안되면 None
    """
    match = uri_re.fullmatch(uri)
    if not match:
        return None
    directory, stem, extension = match.groups()
    return ParsedPath(directory, stem, extension)


def is_allowed_extension(extension, config=DEFAULT_CONFIG):
    return extension.lower() in config.allowed_extensions


def clamp_dimension(value, minimum, maximum):
    """
    query 값을 숫자로 바꾸고 [minimum, maximum]으로 제한
    숫자가 아닌 값은 minimum으로 취급
    """
    if not value:
        return None
    value = value.strip()
    if not number_re.fullmatch(value):
        return minimum

    number = float(value.replace('Infinity', 'inf'))
    if math.isinf(number):
        return maximum if number > 0 else minimum
    return max(minimum, min(maximum, math.floor(number)))


def get_image_dimension(params, config=DEFAULT_CONFIG):
    """
    query params에서 "{width}x{height}" 토큰 생성, 둘 다 없으면 None
    """
    width = clamp_dimension(params.get_value('width'), config.min_width, config.max_width)
    height = clamp_dimension(params.get_value('height'), config.min_height, config.max_height)
    if width is None and height is None:
        return None

    width = '' if width is None else str(width)
    height = '' if height is None else str(height)
    return f'{width}x{height}'


def build_uri(parsed, dimension):
    return f'{parsed.directory}/{parsed.stem}_{dimension}.{parsed.extension}'


def check_request(request):
    if not isinstance(request, dict):
        raise MalformedEventError(f'request is not an object: {type(request).__name__}')
    if not isinstance(request.get('uri'), str):
        raise MalformedEventError(f'request uri is missing or not a string: {request.get("uri")!r}')
    if 'querystring' not in request:
        raise MalformedEventError('request querystring is missing')


def rewrite_request(request, config=DEFAULT_CONFIG):
    """
    이미지 요청 uri에 요청 사이즈를 붙여서 반환
    조건이 안 맞으면 request를 그대로 반환
    """
    check_request(request)
    uri = request['uri']
    params = get_query_params(request['querystring'])

    parsed = parse_uri(uri)
    if not parsed:
        logger.debug('pass through', extra={'uri': uri, 'reason': 'no_match'})
        return request

    if not is_allowed_extension(parsed.extension, config):
        logger.debug('pass through', extra={'uri': uri, 'reason': 'extension'})
        return request

    dimension = get_image_dimension(params, config)
    if dimension is None:
        logger.debug('pass through', extra={'uri': uri, 'reason': 'no_dimension'})
        return request

    new_uri = build_uri(parsed, dimension)
    logger.info('rewrite uri', extra={'uri': uri, 'new_uri': new_uri})
    request['uri'] = new_uri
    return request


def get_request(event):
    """
    Lambda@Edge (Records[0].cf.request), CloudFront Functions (request) 둘 다 지원
    """
    try:
        if 'Records' in event:
            return event['Records'][0]['cf']['request']
        return event['request']
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedEventError(f'request not found in event: {e!r}') from e


def lambda_handler(event, context):
    request = get_request(event)
    return rewrite_request(request)
