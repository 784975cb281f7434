"""Message fields shared by several ACME objects."""
import datetime
from typing import Any

import josepy as jose
import pyrfc3339


class RFC3339Field(jose.Field):
    """Timestamp sent as an RFC 3339 string.

    Decoded values are timezone aware. Encoding a naive value fails.

    """

    @classmethod
    def default_encoder(cls, value: datetime.datetime) -> str:
        return pyrfc3339.generate(value)

    @classmethod
    def default_decoder(cls, value: str) -> datetime.datetime:
        try:
            return pyrfc3339.parse(value)
        except ValueError as error:
            raise jose.DeserializationError(error)


class Resource(jose.Field):
    """The ``resource`` member of a request body.

    It names the endpoint a body is meant for, so that a body signed for
    one endpoint cannot be replayed against another.

    """

    def __init__(self, resource_type: str, *args: Any, **kwargs: Any) -> None:
        self.resource_type = resource_type
        kwargs['default'] = resource_type
        super().__init__('resource', *args, **kwargs)

    def decode(self, value: Any) -> Any:
        if value != self.resource_type:
            raise jose.DeserializationError(
                'Wrong resource type: {0} instead of {1}'.format(
                    value, self.resource_type))
        return value


def rfc3339(json_name: str, omitempty: bool = False) -> Any:
    """`RFC3339Field` typed as its value, for use in annotated classes."""
    return RFC3339Field(json_name, omitempty=omitempty)


def resource(resource_type: str) -> Any:
    """`Resource` typed as its value, for use in annotated classes."""
    return Resource(resource_type)
