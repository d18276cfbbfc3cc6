from typing import Dict, List, Union

from errors import ParseError, ValidationError

# A decoded value is one of four variants, told apart by Python type:
#   int   -> Integer
#   bytes -> ByteString
#   list  -> List
#   dict  -> Dictionary (bytes keys, treated as unordered)
BencodeValue = Union[int, bytes, List["BencodeValue"], Dict[bytes, "BencodeValue"]]

INTEGER_PREFIX = b'i'
LIST_PREFIX = b'l'
DICT_PREFIX = b'd'
END_POSTFIX = b'e'
STRING_SEPARATOR = b':'


class _Frame:
    """An open list or dictionary waiting for its closing 'e'."""

    def __init__(self, container, start):
        self.container = container
        self.start = start
        self.key = None   # dictionary key whose value is being decoded

    @property
    def kind(self):
        return "dictionary" if isinstance(self.container, dict) else "list"

    def expects_key(self):
        return isinstance(self.container, dict) and self.key is None

    def add(self, value):
        if isinstance(self.container, dict):
            self.container[self.key] = value
            self.key = None
        else:
            self.container.append(value)


class Decoder:
    def __init__(self, data, index=0):
        if isinstance(data, str):
            data = data.encode()
        self.data = bytes(data)
        self.index = index

    def peek(self, stack=()):
        if self.index >= len(self.data):
            if stack:
                raise ParseError(f"Unterminated {stack[-1].kind} starting at index {stack[-1].start}")
            raise ParseError(f"Unexpected end of data at index {self.index}")
        return self.data[self.index:self.index + 1]

    def decode(self) -> BencodeValue:
        # lists and dicts are tracked on an explicit stack so nesting depth
        # is bounded by memory, not by the interpreter's recursion limit
        stack = []

        while True:
            # Get the current index character
            char = self.peek(stack)
            frame = stack[-1] if stack else None

            if frame is not None and frame.key is None and char == END_POSTFIX:
                self.index += 1
                value = stack.pop().container
            elif frame is not None and frame.expects_key():
                frame.key = self.decode_key(frame.container)
                continue
            elif char == DICT_PREFIX:
                # d <key-value pairs> e
                stack.append(_Frame({}, self.index))
                self.index += 1
                continue
            elif char == LIST_PREFIX:
                stack.append(_Frame([], self.index))
                self.index += 1
                continue
            elif char == INTEGER_PREFIX:
                value = self.decode_int()
            elif b'0' <= char <= b'9':
                value = self.decode_string()
            else:
                raise ParseError(f"Invalid bencode character {char!r} at index {self.index}")

            if not stack:
                return value
            stack[-1].add(value)

    def decode_key(self, dictionary):
        key_index = self.index
        if not b'0' <= self.peek() <= b'9':
            raise ParseError(f"Dictionary key at index {key_index} is not a byte string")
        key = self.decode_string()
        if key in dictionary:
            raise ParseError(f"Duplicate dictionary key {key!r} at index {key_index}")
        return key

    def decode_int(self):
        # i<number>e
        start = self.index + 1
        end = self.data.find(END_POSTFIX, start)
        if end == -1:
            raise ParseError(f"Unterminated integer at index {self.index}")

        digits = self.data[start:end]
        if not digits.lstrip(b'-').isdigit() or digits.count(b'-') > 1:
            raise ParseError(f"Invalid integer {digits!r} at index {self.index}")

        self.index = end + 1
        return int(digits)

    def decode_string(self):
        # <length>:<bytes>
        colon = self.data.find(STRING_SEPARATOR, self.index)
        if colon == -1:
            raise ParseError(f"Missing ':' after string length at index {self.index}")

        length_digits = self.data[self.index:colon]
        if not length_digits.isdigit():
            raise ParseError(f"Non-numeric string length {length_digits!r} at index {self.index}")

        length = int(length_digits)
        start = colon + 1
        if start + length > len(self.data):
            raise ParseError(
                f"String length {length} at index {self.index} exceeds the {len(self.data) - start} bytes left")

        self.index = start + length
        return self.data[start:self.index]


def decode(data, offset=0):
    """
    Decode one value starting at offset.
    Returns (value, bytes_consumed) so the caller can advance past it.
    """
    decoder = Decoder(data, offset)
    value = decoder.decode()
    return value, decoder.index - offset


def decode_all(data) -> BencodeValue:
    """Decode data that must hold exactly one value and nothing after it."""
    value, consumed = decode(data)
    total = len(data.encode() if isinstance(data, str) else data)
    if consumed != total:
        raise ParseError(f"Trailing data after value: {total - consumed} byte(s) at index {consumed}")
    return value


def sorted_items(dictionary):
    """
    Items of a Dictionary in ascending raw-key order.
    Mappings are never trusted to iterate in canonical order, so every
    encode goes through here.
    """
    items = []
    for key, value in dictionary.items():
        if isinstance(key, str):
            key = key.encode()
        if not isinstance(key, bytes):
            raise ValidationError(f"Dictionary keys must be byte strings, got {type(key).__name__}")
        items.append((key, value))
    items.sort(key=lambda item: item[0])
    return items


_CLOSE = object()   # marks where a list/dict's closing 'e' goes


def encode(value) -> bytes:
    out = []
    pending = [value]

    while pending:
        item = pending.pop()
        if item is _CLOSE:
            out.append(END_POSTFIX)
        # bool is an int subclass but has no bencode form
        elif isinstance(item, bool):
            raise ValidationError("Cannot bencode a bool")
        elif isinstance(item, int):
            out.append(INTEGER_PREFIX + str(item).encode() + END_POSTFIX)
        elif isinstance(item, (str, bytes, bytearray)):
            if isinstance(item, str):
                item = item.encode()
            out.append(str(len(item)).encode() + STRING_SEPARATOR + bytes(item))
        elif isinstance(item, (list, tuple)):
            out.append(LIST_PREFIX)
            pending.append(_CLOSE)
            pending.extend(reversed(item))
        elif isinstance(item, dict):
            out.append(DICT_PREFIX)
            pending.append(_CLOSE)
            for key, child in reversed(sorted_items(item)):
                pending.append(child)
                pending.append(key)
        else:
            raise ValidationError(f"Cannot bencode a value of type {type(item).__name__}")

    return b''.join(out)
