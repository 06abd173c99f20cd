import base64
import hashlib
import tempfile
import unittest
from pathlib import Path

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from devops_provisioner.cloud import ConfigFileAuthentication
from devops_provisioner.errors import PreconditionError

PROFILE_TEMPLATE = """[DEFAULT]
user=ocid1.user.test
fingerprint=aa:bb:cc
tenancy=ocid1.tenancy.test
region=us-ashburn-1
key_file={key_file}

[WORK]
user=ocid1.user.work
fingerprint=dd:ee:ff
tenancy=ocid1.tenancy.work
key_file={key_file}
"""


class ConfigFileAuthenticationTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        key_file = root / "key.pem"
        key_file.write_bytes(self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ))
        self.config_file = root / "config"
        self.config_file.write_text(PROFILE_TEMPLATE.format(key_file=key_file), encoding="utf-8")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_default_profile(self) -> None:
        auth = ConfigFileAuthentication(str(self.config_file))

        self.assertEqual(auth.profile, "DEFAULT")
        self.assertEqual(auth.region, "us-ashburn-1")
        self.assertEqual(auth.tenancy, "ocid1.tenancy.test")

    def test_named_profile_inherits_defaults(self) -> None:
        auth = ConfigFileAuthentication(str(self.config_file), profile="WORK")

        self.assertEqual(auth.user, "ocid1.user.work")
        self.assertEqual(auth.region, "us-ashburn-1")

    def test_region_override(self) -> None:
        auth = ConfigFileAuthentication(str(self.config_file), region="eu-frankfurt-1")
        self.assertEqual(auth.region, "eu-frankfurt-1")

    def test_missing_profile(self) -> None:
        with self.assertRaises(PreconditionError):
            ConfigFileAuthentication(str(self.config_file), profile="NOPE")

    def test_missing_file(self) -> None:
        with self.assertRaises(PreconditionError):
            ConfigFileAuthentication(str(self.config_file.with_name("absent")))

    def test_signs_post_requests(self) -> None:
        auth = ConfigFileAuthentication(str(self.config_file))
        request = requests.Request(
            "POST",
            "https://devops.us-ashburn-1.oci.oraclecloud.com/20210630/projects?limit=5",
            json={"name": "demo"},
            auth=auth.request_auth(),
        ).prepare()

        header = request.headers["authorization"]
        self.assertIn('keyId="ocid1.tenancy.test/ocid1.user.test/aa:bb:cc"', header)
        self.assertIn('headers="date (request-target) host content-length content-type x-content-sha256"', header)
        self.assertEqual(
            request.headers["x-content-sha256"],
            base64.b64encode(hashlib.sha256(request.body).digest()).decode("ascii"),
        )

        signature = base64.b64decode(header.split('signature="')[1].rstrip('"'))
        signed = "\n".join([
            f"date: {request.headers['date']}",
            "(request-target): post /20210630/projects?limit=5",
            "host: devops.us-ashburn-1.oci.oraclecloud.com",
            f"content-length: {request.headers['content-length']}",
            f"content-type: {request.headers['content-type']}",
            f"x-content-sha256: {request.headers['x-content-sha256']}",
        ])
        # 签名无效时抛出 InvalidSignature
        self.key.public_key().verify(signature, signed.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())

    def test_get_requests_sign_only_basic_headers(self) -> None:
        auth = ConfigFileAuthentication(str(self.config_file))
        request = requests.Request(
            "GET", "https://identity.us-ashburn-1.oci.oraclecloud.com/20160918/compartments", auth=auth.request_auth()
        ).prepare()

        self.assertIn('headers="date (request-target) host"', request.headers["authorization"])
        self.assertNotIn("x-content-sha256", request.headers)

    def test_unreadable_key(self) -> None:
        auth = ConfigFileAuthentication(str(self.config_file))
        auth.key_file = Path(self._tmp.name) / "missing.pem"

        with self.assertRaises(PreconditionError):
            auth.request_auth()


if __name__ == "__main__":
    unittest.main()
