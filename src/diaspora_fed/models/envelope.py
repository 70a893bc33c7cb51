"""
Magic envelope models — the signed container and what decoding it yields.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict

NAMESPACE_MAGIC_ENV = "http://salmon-protocol.org/ns/magic-env"
NAMESPACE_LEGACY = "https://joindiaspora.com/protocol"

DATA_TYPE = "application/xml"
ENCODING = "base64url"
ALGORITHM = "RSA-SHA256"


class Envelope(BaseModel):
    """A parsed magic envelope. `data` is the base64url text with whitespace removed."""
    data: str
    data_type: str = DATA_TYPE
    encoding: str = ENCODING
    algorithm: str = ALGORITHM
    signature: str = ""
    key_id: Optional[str] = None  # signer handle hint, usually base64url-encoded

    @property
    def signable(self) -> str:
        from diaspora_fed.crypto import b64url_encode
        return ".".join([
            self.data,
            b64url_encode(self.data_type),
            b64url_encode(self.encoding),
            b64url_encode(self.algorithm),
        ])


class DecodedMessage(BaseModel):
    """The verified plaintext of one inbound envelope."""
    model_config = ConfigDict(frozen=True)

    message: str   # plaintext XML
    author: str    # handle of the envelope signer
    key: str       # PEM public key of the signer
