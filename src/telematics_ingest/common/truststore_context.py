# telematics_ingest/common/truststore_context.py
"""
SSL context factory using the operating system trust store.

Used when the MiX Integrate API is reached through a TLS-inspecting proxy
whose root CA lives in the OS certificate store rather than in certifi.
Enabled with `api.use_truststore: true` in the configuration file.

The `truststore` library is imported lazily inside the factory so that the
package imports cleanly on hosts where it was not installed.
"""

import ssl
from ssl import SSLContext

__all__: list[str] = ['build_truststore_ssl_context']


def build_truststore_ssl_context() -> SSLContext:
    """
    Create an SSLContext that verifies certificates against the OS trust store.

    Returns:
        SSLContext using PROTOCOL_TLS_CLIENT backed by truststore.

    Raises:
        RuntimeError: If truststore is not installed when use_truststore=True.
    """
    try:
        import truststore  # noqa: PLC0415
    except ImportError as import_error:
        raise RuntimeError(
            'truststore is required when use_truststore=True; '
            'install it with: pip install truststore'
        ) from import_error

    ssl_context: SSLContext = truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    return ssl_context
