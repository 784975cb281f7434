"""ACME client interfaces."""
from abc import ABCMeta
from abc import abstractmethod
from typing import Optional

import josepy as jose

from acmeclient import messages


class User(metaclass=ABCMeta):
    """Account holder a `.Session` acts for.

    The session only reads `email` and `key`, and stores the account
    it registers into `registration`.

    """
    registration: Optional[messages.RegistrationResource] = None
    """Registration of the account, once registered."""

    @property
    @abstractmethod
    def email(self) -> Optional[str]:  # pragma: no cover
        """Contact email, or ``None`` to register without one.

        Several addresses may be given separated by commas.

        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def key(self) -> jose.JWK:  # pragma: no cover
        """Private account key signing every request."""
        raise NotImplementedError()
