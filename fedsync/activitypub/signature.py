# code in this file is from Takahe https://github.com/jointakahe/takahe
#
# Copyright 2022 Andrew Godwin
#
# Redistribution and use in source and binary forms, with or without modification,
# are permitted provided that the following conditions are met:
#
# 1. Redistributions of source code must retain the above copyright notice, this
# list of conditions and the following disclaimer.
#
# 2. Redistributions in binary form must reproduce the above copyright notice,
# this list of conditions and the following disclaimer in the documentation and/or
# other materials provided with the distribution.
#
# 3. Neither the name of the copyright holder nor the names of its contributors
# may be used to endorse or promote products derived from this software without
# specific prior written permission.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS" AND
# ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE IMPLIED
# WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE ARE
# DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE LIABLE FOR
# ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES
# (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES;
# LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON
# ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT
# (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS
# SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.

from __future__ import annotations

import base64
import json
from email.utils import formatdate
from typing import Literal, Optional, TypedDict, cast
from urllib.parse import urlparse

import arrow
import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from flask import Request, current_app

from fedsync import httpx_client
from fedsync.constants import VERSION

SUPPORTED_ALGORITHMS = ("rsa-sha256", "hs2019")


def http_date(epoch_seconds=None):
    if epoch_seconds is None:
        epoch_seconds = arrow.utcnow().timestamp()
    return formatdate(epoch_seconds, usegmt=True)


def parse_http_date(http_date_str):
    parsed_date = arrow.get(http_date_str, 'ddd, DD MMM YYYY HH:mm:ss')
    return parsed_date.datetime


class VerificationError(Exception):
    """
    There was an error with verifying the signature
    """

    pass


class VerificationFormatError(VerificationError):
    """
    There was an error with the format of the signature (not if it is valid)
    """

    pass


class RsaKeys:
    @classmethod
    def generate_keypair(cls) -> tuple[str, str]:
        """
        Generates a new RSA keypair
        """
        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
        )
        private_key_serialized = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_key_serialized = (
            private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode("ascii")
        )
        return private_key_serialized, public_key_serialized


# One piece of a signature header, without building a full HttpSignatureDetails
def signature_part(signature: Optional[str], key: str) -> str:
    if not signature:
        return ''
    for part in signature.split(','):
        name, _, value = part.partition('=')
        if name.strip() == key:
            return value.strip().strip('"')
    return ''


def signature_header(request: Request) -> Optional[str]:
    """The Signature header, or the signature carried in `Authorization: Signature ...`"""
    if request.headers.get("Signature"):
        return request.headers["Signature"]
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("signature "):
        return authorization[len("signature "):]
    return None


class HttpSignature:
    """
    Allows for calculation and verification of HTTP signatures
    """

    @classmethod
    def calculate_digest(cls, data, algorithm="sha-256") -> str:
        """
        Calculates the digest header value for a given HTTP body
        """
        if algorithm == "sha-256":
            digest = hashes.Hash(hashes.SHA256())
            digest.update(data)
            return "SHA-256=" + base64.b64encode(digest.finalize()).decode("ascii")
        else:
            raise ValueError(f"Unknown digest algorithm {algorithm}")

    @classmethod
    def headers_from_request(cls, request: Request, header_names: list[str]) -> str:
        """
        Creates the to-be-signed header payload from a Flask request
        """
        signature = signature_header(request)
        headers = {}
        for header_name in header_names:
            if header_name == "(request-target)":
                target = request.full_path.rstrip("?") if request.query_string else request.path
                value = f"{request.method.lower()} {target}"
            elif header_name == "(created)":
                value = signature_part(signature, "created")
            elif header_name == "(expires)":
                value = signature_part(signature, "expires")
            else:
                value = request.headers.get(header_name, "")
            headers[header_name] = value
        return "\n".join(f"{name.lower()}: {value}" for name, value in headers.items())

    @classmethod
    def parse_signature(cls, signature: str) -> "HttpSignatureDetails":
        bits = {}
        for item in signature.split(","):
            if "=" not in item:
                continue
            name, value = item.split("=", 1)
            bits[name.strip().lower()] = value.strip().strip('"')
        try:
            signature_details: HttpSignatureDetails = {
                "headers": bits.get("headers", "date").lower().split(),
                "signature": base64.b64decode(bits["signature"]),
                "algorithm": bits.get("algorithm", "hs2019"),
                "keyid": bits["keyid"],
            }
        except KeyError as e:
            key_names = " ".join(bits.keys())
            raise VerificationFormatError(
                f"Missing item from details (have: {key_names}, error: {e})"
            )
        except ValueError as e:
            raise VerificationFormatError(f"Signature is not valid base64: {e}")
        return signature_details

    @classmethod
    def compile_signature(cls, details: "HttpSignatureDetails") -> str:
        value = f'keyId="{details["keyid"]}",headers="'
        value += " ".join(h.lower() for h in details["headers"])
        value += '",signature="'
        value += base64.b64encode(details["signature"]).decode("ascii")
        value += f'",algorithm="{details["algorithm"]}"'
        return value

    @classmethod
    def verify_signature(
            cls,
            signature: bytes,
            cleartext: str,
            public_key: str,
    ):
        try:
            public_key_instance: rsa.RSAPublicKey = cast(
                rsa.RSAPublicKey,
                serialization.load_pem_public_key(public_key.encode("ascii")),
            )
        except ValueError as e:
            raise VerificationFormatError(f"Unusable public key: {e}")
        try:
            public_key_instance.verify(
                signature,
                cleartext.encode("utf8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except InvalidSignature:
            raise VerificationError("Signature mismatch")

    @classmethod
    def verify_request(cls, request: Request, public_key, skip_date=False):
        """
        Verifies that the request has a valid signature for its body
        """
        # Verify body digest
        if "digest" in request.headers:
            expected_digest = HttpSignature.calculate_digest(request.get_data())
            if request.headers["digest"] != expected_digest:
                raise VerificationFormatError("Digest is incorrect")

        # Verify date header
        if "date" in request.headers and not skip_date:
            try:
                header_date = parse_http_date(request.headers["date"])
            except ValueError:
                raise VerificationFormatError("Date header is not an HTTP date")
            if abs((arrow.utcnow() - header_date).total_seconds()) > 3600:
                raise VerificationFormatError("Date is too far away")

        # Get the signature details
        signature = signature_header(request)
        if not signature:
            raise VerificationFormatError("No signature header present")
        signature_details = cls.parse_signature(signature)

        # Reject unknown algorithms
        # hs2019 is used by some libraries to obfuscate the real algorithm, see
        # https://datatracker.ietf.org/doc/html/draft-cavage-http-signatures-12
        if signature_details["algorithm"] not in SUPPORTED_ALGORITHMS:
            raise VerificationFormatError("Unknown signature algorithm")
        # A body without a signed digest could be swapped for anything
        if request.method == "POST" and "digest" not in signature_details["headers"]:
            raise VerificationFormatError("POST signature does not cover the digest")
        # Create the signature payload
        headers_string = cls.headers_from_request(request, signature_details["headers"])
        cls.verify_signature(
            signature_details["signature"],
            headers_string,
            public_key,
        )
        return True

    @classmethod
    def signed_request(
            cls,
            uri: str,
            body: dict | None,
            private_key: str,
            key_id: str,
            content_type: str = "application/activity+json",
            method: Literal["get", "post"] = "post",
            timeout: int = 5,
            extra_headers: dict | None = None,
    ) -> httpx.Response:
        """
        Performs a request to the given path, with a document, signed
        as an identity.
        """
        if "://" not in uri:
            raise ValueError("URI does not contain a scheme")
        # Create the core header field set
        uri_parts = urlparse(uri)
        target = uri_parts.path or "/"
        if uri_parts.query:
            target += f"?{uri_parts.query}"
        headers = {
            "(request-target)": f"{method} {target}",
            "Host": uri_parts.netloc,
            "Date": http_date(),
        }
        # If we have a body, add a digest and content type
        if body is not None:
            body_bytes = json.dumps(body).encode("utf8")
            headers["Digest"] = cls.calculate_digest(body_bytes)
            headers["Content-Type"] = content_type
        else:
            body_bytes = b""
        # GET requests get implicit accept headers added
        if method == "get":
            headers["Accept"] = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
        # Headers that have to be covered by the signature, e.g. Collection-Synchronization
        if extra_headers:
            headers.update(extra_headers)
        # Sign the headers
        signed_string = "\n".join(
            f"{name.lower()}: {value}" for name, value in headers.items()
        )
        private_key_instance: rsa.RSAPrivateKey = cast(
            rsa.RSAPrivateKey,
            serialization.load_pem_private_key(
                private_key.encode("ascii"),
                password=None,
            ),
        )
        signature = private_key_instance.sign(
            signed_string.encode("utf8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        headers["Signature"] = cls.compile_signature(
            {
                "keyid": key_id,
                "headers": list(headers.keys()),
                "signature": signature,
                "algorithm": "rsa-sha256",
            }
        )

        headers["User-Agent"] = f'fedsync/{VERSION}; +https://{current_app.config["SERVER_NAME"]}'

        # Send the request with all those headers except the pseudo one
        del headers["(request-target)"]
        return httpx_client.request(
            method.upper(),
            uri,
            headers=headers,
            content=body_bytes if body is not None else None,
            timeout=timeout,
            follow_redirects=method == "get",
        )


class HttpSignatureDetails(TypedDict):
    algorithm: str
    headers: list[str]
    signature: bytes
    keyid: str
