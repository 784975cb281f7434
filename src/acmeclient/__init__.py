"""ACME client.

This package is a client for the ``new-reg`` / ``new-authz`` / ``new-cert``
flavour of the `ACME protocol`_: it registers an account, proves control of
domains with challenge solvers and obtains certificates.

.. _`ACME protocol`: https://github.com/ietf-wg-acme/acme

"""
