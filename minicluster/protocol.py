"""
RESP wire protocol for the coordination service.
Requests are arrays of bulk strings; replies are any RESP value.
"""

import logging
from enum import Enum
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)

CRLF = b"\r\n"


class RESPType(Enum):
    """RESP data types"""
    SIMPLE_STRING = "+"
    ERROR = "-"
    INTEGER = ":"
    BULK_STRING = "$"
    ARRAY = "*"


class RESPError(str):
    """Error reply decoded from the wire (``-CODE message``)"""

    @property
    def code(self) -> str:
        return self.split(" ", 1)[0]

    @property
    def message(self) -> str:
        parts = self.split(" ", 1)
        return parts[1] if len(parts) > 1 else ""


class RESPProtocol:
    """RESP encoder"""

    @staticmethod
    def encode_simple_string(data: str) -> bytes:
        """Encode simple string: +OK\\r\\n"""
        return b"+" + data.encode('utf-8') + CRLF

    @staticmethod
    def encode_error(error: str) -> bytes:
        """Encode error: -NONODE /path\\r\\n"""
        return b"-" + error.encode('utf-8') + CRLF

    @staticmethod
    def encode_integer(num: int) -> bytes:
        """Encode integer: :1000\\r\\n"""
        return f":{num}".encode('utf-8') + CRLF

    @staticmethod
    def encode_bulk_string(data: Optional[str]) -> bytes:
        """Encode bulk string: $6\\r\\nfoobar\\r\\n or $-1\\r\\n for null"""
        if data is None:
            return b"$-1" + CRLF

        data_bytes = data.encode('utf-8')
        return f"${len(data_bytes)}".encode('utf-8') + CRLF + data_bytes + CRLF

    @staticmethod
    def encode_array(items: Optional[List[Any]]) -> bytes:
        """Encode array: *2\\r\\n$3\\r\\nfoo\\r\\n$3\\r\\nbar\\r\\n"""
        if items is None:
            return b"*-1" + CRLF

        parts = [f"*{len(items)}".encode('utf-8') + CRLF]
        for item in items:
            parts.append(RESPProtocol.encode_response(item))
        return b"".join(parts)

    @staticmethod
    def encode_command(*args: Any) -> bytes:
        """Encode a request as an array of bulk strings"""
        return RESPProtocol.encode_array([str(arg) for arg in args])

    @staticmethod
    def encode_response(data: Any) -> bytes:
        """Encode response based on data type"""
        if isinstance(data, RESPError):
            return RESPProtocol.encode_error(data)
        elif isinstance(data, bool):
            return RESPProtocol.encode_integer(1 if data else 0)
        elif isinstance(data, str):
            return RESPProtocol.encode_bulk_string(data)
        elif isinstance(data, int):
            return RESPProtocol.encode_integer(data)
        elif isinstance(data, (list, tuple)):
            return RESPProtocol.encode_array(list(data))
        elif data is None:
            return RESPProtocol.encode_bulk_string(None)
        else:
            return RESPProtocol.encode_bulk_string(str(data))


class RESPParser:
    """Incremental RESP parser"""

    def __init__(self):
        self.buffer = b""

    def feed(self, data: bytes):
        """Feed data to parser"""
        self.buffer += data

    def parse(self) -> List[Any]:
        """Parse complete values from buffer; raises ValueError on malformed input"""
        values = []

        while self.buffer:
            value, consumed = self._parse_at(0)
            if consumed == 0:
                break  # Need more data

            values.append(value)
            self.buffer = self.buffer[consumed:]

        return values

    def _parse_at(self, pos: int) -> Tuple[Optional[Any], int]:
        """Parse a single RESP element starting at pos; returns (value, consumed)"""
        if len(self.buffer) <= pos:
            return None, 0

        type_byte = chr(self.buffer[pos])
        crlf_pos = self.buffer.find(CRLF, pos + 1)
        if crlf_pos == -1:
            return None, 0
        line = self.buffer[pos + 1:crlf_pos].decode('utf-8')
        header_len = crlf_pos + 2 - pos

        if type_byte == RESPType.SIMPLE_STRING.value:
            return line, header_len
        elif type_byte == RESPType.ERROR.value:
            return RESPError(line), header_len
        elif type_byte == RESPType.INTEGER.value:
            return int(line), header_len
        elif type_byte == RESPType.BULK_STRING.value:
            length = int(line)
            if length == -1:
                return None, header_len
            data_start = crlf_pos + 2
            total_needed = data_start + length + 2
            if len(self.buffer) < total_needed:
                return None, 0
            data = self.buffer[data_start:data_start + length].decode('utf-8')
            return data, total_needed - pos
        elif type_byte == RESPType.ARRAY.value:
            count = int(line)
            if count == -1:
                return None, header_len
            elements = []
            consumed = header_len
            for _ in range(count):
                element, element_consumed = self._parse_at(pos + consumed)
                if element_consumed == 0:
                    return None, 0
                elements.append(element)
                consumed += element_consumed
            return elements, consumed
        else:
            raise ValueError(f"Unknown RESP type: {type_byte!r}")
