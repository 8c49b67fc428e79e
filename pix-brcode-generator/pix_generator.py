#!/usr/bin/env python3
"""
PIX BR Code Generator
Static PIX payloads (Banco Central do Brasil "BR Code"), a subset of the
EMV Merchant-Presented QR Code Specification
"""

import argparse
import json
import logging
import re
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Optional, Any, Union

import qrcode

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Raised when a required field of a payment request is missing or blank"""


# Accented Latin letters mapped to their base letter. Anything else outside
# [A-Za-z0-9 ] is dropped by normalize_string.
ACCENTS_MAP = MappingProxyType({
    "á": "a", "à": "a", "ã": "a", "â": "a", "ä": "a",
    "é": "e", "è": "e", "ê": "e", "ë": "e",
    "í": "i", "ì": "i", "î": "i", "ï": "i",
    "ó": "o", "ò": "o", "õ": "o", "ô": "o", "ö": "o",
    "ú": "u", "ù": "u", "û": "u", "ü": "u",
    "ç": "c", "ñ": "n",
    "Á": "A", "À": "A", "Ã": "A", "Â": "A", "Ä": "A",
    "É": "E", "È": "E", "Ê": "E", "Ë": "E",
    "Í": "I", "Ì": "I", "Î": "I", "Ï": "I",
    "Ó": "O", "Ò": "O", "Õ": "O", "Ô": "O", "Ö": "O",
    "Ú": "U", "Ù": "U", "Û": "U", "Ü": "U",
    "Ç": "C", "Ñ": "N",
})

NON_ALPHANUMERIC_RE = re.compile(r"[^A-Za-z0-9 ]")
REPEATED_SPACES_RE = re.compile(r" {2,}")
CRC_SUFFIX_RE = re.compile(r"6304([0-9A-F]{4})\Z")

# CRC-16/CCITT-FALSE parameters
CRC_POLYNOMIAL = 0x1021
CRC_INIT_VALUE = 0xFFFF

CRC_PLACEHOLDER = "6304"


def normalize_string(text: Optional[str]) -> str:
    """
    Remove accents and special characters, keeping letters, digits and spaces

    Args:
        text: Free text (merchant name, city, description, txid)

    Returns:
        ASCII-only text, stripped of leading/trailing whitespace
    """
    if not text:
        return ""

    mapped = "".join(ACCENTS_MAP.get(char, char) for char in text)
    # Dropped symbols leave their surrounding spaces behind
    filtered = NON_ALPHANUMERIC_RE.sub("", mapped)
    return REPEATED_SPACES_RE.sub(" ", filtered).strip()


def format_amount(amount: Union[int, float, Decimal]) -> str:
    """Format a monetary amount with two decimals and '.' as separator"""
    return f"{amount:.2f}"


def calculate_crc16(data: str) -> str:
    """
    Calculate CRC-16/CCITT-FALSE checksum

    Args:
        data: The payload string, already ending with the "6304" placeholder

    Returns:
        4-character hexadecimal CRC value (uppercase)
    """
    crc = CRC_INIT_VALUE

    for char in data:
        crc ^= (ord(char) & 0xFF) << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ CRC_POLYNOMIAL
            else:
                crc = crc << 1
            crc &= 0xFFFF

    # Format as 4-digit uppercase hex
    return format(crc, "04X")


def validate_payload(payload: Any) -> bool:
    """
    Check format markers and the CRC of a PIX payload

    This is an integrity check only. It does not walk the TLV structure
    and says nothing about who produced the payload.

    Args:
        payload: Payload string, self-generated or from a third party

    Returns:
        True if every check passes, False otherwise (never raises)
    """
    if not isinstance(payload, str) or len(payload) < 20:
        logger.debug("Payload rejected: missing or shorter than 20 characters")
        return False

    if not payload.startswith("0002"):
        logger.debug("Payload rejected: no payload format indicator")
        return False

    if "5303986" not in payload:
        logger.debug("Payload rejected: currency is not BRL")
        return False

    match = CRC_SUFFIX_RE.search(payload)
    if not match:
        logger.debug("Payload rejected: no trailing CRC field")
        return False

    expected_crc = calculate_crc16(payload[:-4])
    if match.group(1) != expected_crc:
        logger.debug(f"Payload rejected: CRC {match.group(1)} != {expected_crc}")
        return False

    return True


@dataclass(frozen=True)
class PixPaymentRequest:
    pix_key: str
    merchant_name: str
    merchant_city: str
    amount: Optional[Union[int, float, Decimal]] = None
    txid: Optional[str] = None
    description: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PixPaymentRequest":
        if not isinstance(data, dict):
            raise ValueError(f"Payment request must be a JSON object, got {type(data).__name__}")

        def pick(snake: str, camel: str) -> Any:
            return data.get(snake, data.get(camel))

        amount = data.get("amount")
        if isinstance(amount, bool):
            raise ValueError(f"Invalid amount: {amount}")
        if isinstance(amount, str):
            amount = Decimal(amount) if amount.strip() else None

        # Phone and CPF/CNPJ keys are often written as JSON numbers
        pix_key = pick("pix_key", "pixKey")
        if isinstance(pix_key, int) and not isinstance(pix_key, bool):
            pix_key = str(pix_key)

        return PixPaymentRequest(
            pix_key=pix_key,
            merchant_name=pick("merchant_name", "merchantName"),
            merchant_city=pick("merchant_city", "merchantCity"),
            amount=amount,
            txid=data.get("txid"),
            description=data.get("description"),
        )

    @staticmethod
    def read_config(path: Union[str, Path]) -> Any:
        return json.loads(Path(path).read_text(encoding="utf-8"))

    @staticmethod
    def load(path: Union[str, Path]) -> "PixPaymentRequest":
        return PixPaymentRequest.from_dict(PixPaymentRequest.read_config(path))


class PixPayloadGenerator:
    """
    Generates static PIX payloads following the BR Code profile
    of the EMV QR Code Specifications
    """

    TOP_LEVEL_TAG_NAMES = {
        "00": "Payload Format Indicator",
        "01": "Point of Initiation Method",
        "26": "Merchant Account Information - PIX",
        "52": "Merchant Category Code",
        "53": "Transaction Currency",
        "54": "Transaction Amount",
        "58": "Country Code",
        "59": "Merchant Name",
        "60": "Merchant City",
        "61": "Postal Code",
        "62": "Additional Data Field Template",
        "63": "CRC",
    }

    MERCHANT_ACCOUNT_TAGS = {f"{i:02d}" for i in range(26, 52)}

    PIX_ACCOUNT_SUBTAG_NAMES = {
        "00": "Globally Unique Identifier",
        "01": "PIX Key",
        "02": "Additional Information",
        "25": "Payload URL",
    }

    ADDITIONAL_DATA_SUBTAG_NAMES = {
        "05": "Reference Label",
    }

    PIX_GUI = "br.gov.bcb.pix"

    # Maximum lengths after normalization
    MERCHANT_NAME_MAX = 25
    MERCHANT_CITY_MAX = 15
    TXID_MAX = 25
    DESCRIPTION_MAX = 50

    # EMV-reserved "no reference" label
    DEFAULT_TXID = "***"

    def encode_tlv(self, tag: str, value: str) -> str:
        """
        Encode data in TLV (Tag-Length-Value) format

        Args:
            tag: 2-digit tag identifier
            value: The value to encode, already ASCII

        Returns:
            Encoded string in format: tag + length + value
        """
        return f"{tag}{len(value):02d}{value}"

    def encode_nested_tlv(self, data_objects: List[Dict[str, str]]) -> str:
        """
        Encode nested data objects (merchant account, additional data)

        Args:
            data_objects: List of dictionaries with 'id' and 'value' keys

        Returns:
            Concatenated TLV encoded string
        """
        return "".join(self.encode_tlv(obj["id"], obj["value"]) for obj in data_objects)

    def normalize_txid(self, txid: Optional[str]) -> str:
        """Normalize a txid, falling back to '***' when nothing is left"""
        normalized = normalize_string(txid).replace(" ", "")[:self.TXID_MAX].upper()
        return normalized or self.DEFAULT_TXID

    def generate_merchant_account_info(self, pix_key: str, description: str) -> str:
        """
        Generate the Merchant Account Information field value (ID "26")

        The PIX key goes in verbatim: e-mail and phone keys carry '@', '+' and '.'.
        """
        data_objects = [
            {"id": "00", "value": self.PIX_GUI},
            {"id": "01", "value": pix_key},
        ]

        if description:
            data_objects.append({"id": "02", "value": description})

        return self.encode_nested_tlv(data_objects)

    def generate_additional_data(self, txid: str) -> str:
        """Generate the Additional Data Field Template value (ID "62")"""
        return self.encode_nested_tlv([{"id": "05", "value": txid}])

    def check_required_fields(self, request: PixPaymentRequest) -> None:
        required = {
            "pix_key": request.pix_key,
            "merchant_name": request.merchant_name,
            "merchant_city": request.merchant_city,
        }
        missing = [name for name, value in required.items()
                   if not isinstance(value, str) or not value.strip()]

        if missing:
            logger.warning(f"PIX payload not generated, missing fields: {', '.join(missing)}")
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

    def generate_payload(self, request: PixPaymentRequest) -> str:
        """
        Generate the complete PIX payload string

        Args:
            request: Payment request with key, merchant data and optional amount

        Returns:
            Complete PIX payload string with CRC

        Raises:
            ValidationError: pix_key, merchant_name or merchant_city is blank
        """
        self.check_required_fields(request)

        merchant_name = normalize_string(request.merchant_name)[:self.MERCHANT_NAME_MAX]
        merchant_city = normalize_string(request.merchant_city)[:self.MERCHANT_CITY_MAX]
        description = normalize_string(request.description)[:self.DESCRIPTION_MAX]
        txid = self.normalize_txid(request.txid)

        payload = ""

        # 1. Payload Format Indicator (mandatory, always "01")
        payload += self.encode_tlv("00", "01")

        # 2. Merchant Account Information - PIX
        payload += self.encode_tlv("26", self.generate_merchant_account_info(request.pix_key, description))

        # 3. Merchant Category Code (0000 = not informed)
        payload += self.encode_tlv("52", "0000")

        # 4. Transaction Currency (986 = BRL)
        payload += self.encode_tlv("53", "986")

        # 5. Transaction Amount (optional, open amount when absent)
        if request.amount is not None and request.amount > 0:
            payload += self.encode_tlv("54", format_amount(request.amount))

        # 6. Country Code
        payload += self.encode_tlv("58", "BR")

        # 7. Merchant Name
        payload += self.encode_tlv("59", merchant_name)

        # 8. Merchant City
        payload += self.encode_tlv("60", merchant_city)

        # 9. Additional Data Field Template
        payload += self.encode_tlv("62", self.generate_additional_data(txid))

        # 10. CRC over everything, including its own "6304" header
        payload += CRC_PLACEHOLDER
        payload += calculate_crc16(payload)

        logger.debug(f"Generated PIX payload ({len(payload)} chars) for txid {txid}")
        return payload

    def generate_qr_code(self, payload: str, output_file: str = "pix.png") -> str:
        """
        Generate QR code image from payload

        Args:
            payload: PIX payload string
            output_file: Output filename for QR code image
        """
        qr = qrcode.QRCode(
            version=None,  # Let it auto-determine size
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )

        qr.add_data(payload)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")
        img.save(output_file)

        return output_file

    def parse_payload(self, payload: str, parent_tag: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Parse a payload string back to structured format
        (Useful for debugging; validate_payload does not use it)

        Args:
            payload: PIX payload string
            parent_tag: Optional tag of the parent structure for context

        Returns:
            List of parsed data objects
        """
        result = []
        i = 0

        while i + 4 <= len(payload):
            tag = payload[i:i+2]
            length_text = payload[i+2:i+4]

            if not length_text.isdigit():
                break

            value_start = i + 4
            value_end = value_start + int(length_text)

            if value_end > len(payload):
                break

            value = payload[value_start:value_end]

            obj = {
                "id": tag,
                "name": self.get_tag_name(tag, parent_tag),
                "length": length_text,
                "value": value,
            }

            # Only top-level templates carry nested TLV data
            if parent_tag is None and (tag in self.MERCHANT_ACCOUNT_TAGS or tag == "62"):
                obj["dataObjects"] = self.parse_payload(value, parent_tag=tag)

            result.append(obj)
            i = value_end

        return result

    def get_tag_name(self, tag: str, parent_tag: Optional[str] = None) -> str:
        """Return descriptive name for a tag using context-specific mappings."""
        if parent_tag is None:
            if tag in self.TOP_LEVEL_TAG_NAMES:
                return self.TOP_LEVEL_TAG_NAMES[tag]
            if tag in self.MERCHANT_ACCOUNT_TAGS:
                return f"Merchant Account Information ({tag})"
            return f"Unknown Tag {tag}"

        if parent_tag in self.MERCHANT_ACCOUNT_TAGS:
            return self.PIX_ACCOUNT_SUBTAG_NAMES.get(tag, f"Payment System Specific Data ({tag})")

        if parent_tag == "62":
            return self.ADDITIONAL_DATA_SUBTAG_NAMES.get(tag, f"Additional Data ({tag})")

        return f"Unknown Tag {tag}"


def configure_logging(verbose: bool = False) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    if not any(getattr(h, "name", None) == "console" for h in root.handlers):
        console = logging.StreamHandler()
        console.set_name("console")
        console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(console)


def main(argv: Optional[List[str]] = None) -> int:
    """Generate a PIX payload (and QR image) from a JSON config, or validate one"""
    parser = argparse.ArgumentParser(description="Generate or validate static PIX BR Code payloads")
    parser.add_argument("--config", default="pix_config.json", help="Path to the payment request JSON")
    parser.add_argument("--output", help="QR code PNG output file (default: config 'output_file' or pix.png)")
    parser.add_argument("--no-image", action="store_true", help="Do not write the QR code image")
    parser.add_argument("--validate", metavar="PAYLOAD", help="Validate an existing payload and exit")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    configure_logging(args.verbose)

    if args.validate is not None:
        valid = validate_payload(args.validate)
        print(f"Payload is {'valid' if valid else 'INVALID'}")
        return 0 if valid else 1

    # Load configuration from JSON file
    try:
        config = PixPaymentRequest.read_config(args.config)
        request = PixPaymentRequest.from_dict(config)
    except (OSError, ValueError, ArithmeticError) as e:
        logger.error(f"Could not read config {args.config}: {e}")
        return 2

    generator = PixPayloadGenerator()

    try:
        payload = generator.generate_payload(request)
    except ValidationError as e:
        logger.error(str(e))
        return 2

    print("Generated PIX Payload:")
    print(payload)
    print(f"\nPayload Length: {len(payload)} characters")

    if not args.no_image:
        output_file = args.output or config.get("output_file", "pix.png")
        generator.generate_qr_code(payload, output_file)
        print(f"\nQR Code saved to: {output_file}")

    # Parse and display the payload structure
    print("\nParsed Structure:")
    print(json.dumps(generator.parse_payload(payload), indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(main())
