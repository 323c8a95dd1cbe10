"""
axml.py  ─  compiled (binary) XML codec
═══════════════════════════════════════════════════════════════════════════════
Layout of a compiled manifest:

    ResXMLTree_header   type=0x0003  hdr=8   size=<whole file>
    ResStringPool       type=0x0001  hdr=28
    ResXMLTree_resmap   type=0x0180  hdr=8   u32 resource id per string index
    node chunks         type=0x0100..0x0104  hdr=16 (line, comment)

An attribute name string at index i is bound to resource id resmap[i], so
every resource-mapped name has to live below len(resmap). Adding a new
mapped name therefore inserts a string AT the boundary and shifts every
string reference >= boundary by one.

Unmodified string pools are re-emitted from their raw bytes and every node
field (including odd header sizes and trailing bytes) is preserved, so a
document that is parsed and serialized without edits is byte-identical.
"""

import struct
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from nexpatch.errors import MalformedManifest

# chunk types
CHUNK_STRING_POOL = 0x0001
CHUNK_XML         = 0x0003
CHUNK_START_NS    = 0x0100
CHUNK_END_NS      = 0x0101
CHUNK_START_ELEM  = 0x0102
CHUNK_END_ELEM    = 0x0103
CHUNK_CDATA       = 0x0104
CHUNK_RESMAP      = 0x0180

# Res_value data types
TYPE_NULL        = 0x00
TYPE_REFERENCE   = 0x01
TYPE_STRING      = 0x03
TYPE_INT_DEC     = 0x10
TYPE_INT_HEX     = 0x11
TYPE_INT_BOOLEAN = 0x12

NO_INDEX = 0xFFFFFFFF
BOOL_TRUE = 0xFFFFFFFF

_UTF8_FLAG   = 1 << 8
_SORTED_FLAG = 1 << 0
_POOL_HDR    = 28
_NODE_HDR    = 16
_ATTR_SIZE   = 20
_SPAN_END    = 0xFFFFFFFF


def _shift(idx: int, at: int) -> int:
    if idx != NO_INDEX and idx >= at:
        return idx + 1
    return idx


# ═══════════════════════════════════════════════════════════════════════════════
#  S T R I N G   P O O L
# ═══════════════════════════════════════════════════════════════════════════════
def _decode_len8(buf: bytes, pos: int) -> Tuple[int, int]:
    n = buf[pos]
    if n & 0x80:
        return ((n & 0x7F) << 8) | buf[pos + 1], pos + 2
    return n, pos + 1


def _decode_len16(buf: bytes, pos: int) -> Tuple[int, int]:
    n = struct.unpack_from('<H', buf, pos)[0]
    if n & 0x8000:
        lo = struct.unpack_from('<H', buf, pos + 2)[0]
        return ((n & 0x7FFF) << 16) | lo, pos + 4
    return n, pos + 2


def _encode_len8(n: int) -> bytes:
    if n > 0x7FFF:
        raise MalformedManifest(f"string too long for UTF-8 pool ({n})")
    return bytes([n]) if n < 0x80 else bytes([0x80 | (n >> 8), n & 0xFF])


def _encode_len16(n: int) -> bytes:
    if n < 0x8000:
        return struct.pack('<H', n)
    return struct.pack('<HH', 0x8000 | (n >> 16), n & 0xFFFF)


@dataclass(eq=False)
class StringPool:
    strings: List[str] = field(default_factory=list)
    styles: List[List[Tuple[int, int, int]]] = field(default_factory=list)
    utf8: bool = True
    flags: int = _UTF8_FLAG
    raw: Optional[bytes] = None

    @classmethod
    def parse(cls, chunk: bytes) -> "StringPool":
        _, hdr_size, size = struct.unpack_from('<HHI', chunk, 0)
        count, style_count, flags, strings_start, styles_start = \
            struct.unpack_from('<5I', chunk, 8)
        utf8 = bool(flags & _UTF8_FLAG)
        offsets = struct.unpack_from(f'<{count}I', chunk, hdr_size)
        style_offsets = struct.unpack_from(f'<{style_count}I', chunk, hdr_size + 4 * count)

        strings = []
        for off in offsets:
            pos = strings_start + off
            if utf8:
                _, pos = _decode_len8(chunk, pos)           # utf-16 unit count
                nbytes, pos = _decode_len8(chunk, pos)
                if pos + nbytes > size:
                    raise MalformedManifest("string pool entry runs past its chunk")
                strings.append(chunk[pos:pos + nbytes].decode('utf-8'))
            else:
                units, pos = _decode_len16(chunk, pos)
                if pos + 2 * units > size:
                    raise MalformedManifest("string pool entry runs past its chunk")
                strings.append(chunk[pos:pos + 2 * units].decode('utf-16-le'))

        styles = []
        for off in style_offsets:
            pos = styles_start + off
            spans = []
            while True:
                name = struct.unpack_from('<I', chunk, pos)[0]
                if name == _SPAN_END:
                    break
                spans.append(struct.unpack_from('<3I', chunk, pos))
                pos += 12
            styles.append(spans)

        return cls(strings, styles, utf8, flags, bytes(chunk[:size]))

    # ── lookup / mutation ────────────────────────────────────────────────────
    def __len__(self) -> int:
        return len(self.strings)

    def get(self, idx: int) -> Optional[str]:
        if idx == NO_INDEX:
            return None
        if idx >= len(self.strings):
            raise MalformedManifest(f"dangling string index {idx} (pool has {len(self.strings)})")
        return self.strings[idx]

    def find(self, value: str, start: int = 0) -> int:
        for i in range(start, len(self.strings)):
            if self.strings[i] == value:
                return i
        return -1

    def intern(self, value: str, start: int = 0) -> int:
        """Index of `value` at or after `start`, appending it when absent."""
        idx = self.find(value, start)
        if idx >= 0:
            return idx
        self.strings.append(value)
        self.raw = None
        return len(self.strings) - 1

    def insert(self, index: int, value: str) -> None:
        self.strings.insert(index, value)
        if index < len(self.styles):
            self.styles.insert(index, [])
        self.styles = [[(_shift(n, index), a, b) for n, a, b in spans] for spans in self.styles]
        self.raw = None

    # ── encoding ─────────────────────────────────────────────────────────────
    def _encode_string(self, s: str) -> bytes:
        units = len(s.encode('utf-16-le')) // 2
        if self.utf8:
            data = s.encode('utf-8')
            return _encode_len8(units) + _encode_len8(len(data)) + data + b'\x00'
        return _encode_len16(units) + s.encode('utf-16-le') + b'\x00\x00'

    def serialize(self) -> bytes:
        if self.raw is not None:
            return self.raw
        count, style_count = len(self.strings), len(self.styles)
        offsets, blob = [], bytearray()
        for s in self.strings:
            offsets.append(len(blob))
            blob += self._encode_string(s)
        blob += b'\x00' * (-len(blob) % 4)

        style_offsets, style_blob = [], bytearray()
        for spans in self.styles:
            style_offsets.append(len(style_blob))
            for span in spans:
                style_blob += struct.pack('<3I', *span)
            style_blob += struct.pack('<I', _SPAN_END)
        if style_count:
            style_blob += struct.pack('<II', _SPAN_END, _SPAN_END)

        strings_start = _POOL_HDR + 4 * (count + style_count)
        styles_start = strings_start + len(blob) if style_count else 0
        size = strings_start + len(blob) + len(style_blob)
        flags = self.flags & ~_SORTED_FLAG
        flags = (flags | _UTF8_FLAG) if self.utf8 else (flags & ~_UTF8_FLAG)
        out = struct.pack('<HHI5I', CHUNK_STRING_POOL, _POOL_HDR, size,
                          count, style_count, flags, strings_start, styles_start)
        out += struct.pack(f'<{count}I', *offsets)
        out += struct.pack(f'<{style_count}I', *style_offsets)
        self.raw = out + bytes(blob) + bytes(style_blob)
        return self.raw


# ═══════════════════════════════════════════════════════════════════════════════
#  N O D E S
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass(eq=False)
class Node:
    line: int = 0
    comment: int = NO_INDEX
    header_extra: bytes = b''

    chunk_type = 0

    def string_refs(self) -> List[str]:
        return ['comment']

    def renumber(self, at: int) -> None:
        for attr in self.string_refs():
            setattr(self, attr, _shift(getattr(self, attr), at))

    def body(self) -> bytes:
        raise NotImplementedError

    def serialize(self) -> bytes:
        body = self.body()
        hdr = _NODE_HDR + len(self.header_extra)
        return (struct.pack('<HHIII', self.chunk_type, hdr, hdr + len(body),
                            self.line, self.comment)
                + self.header_extra + body)


@dataclass(eq=False)
class NamespaceNode(Node):
    prefix: int = NO_INDEX
    uri: int = NO_INDEX
    end: bool = False
    tail: bytes = b''

    @property
    def chunk_type(self) -> int:
        return CHUNK_END_NS if self.end else CHUNK_START_NS

    def string_refs(self) -> List[str]:
        return ['comment', 'prefix', 'uri']

    def body(self) -> bytes:
        return struct.pack('<II', self.prefix, self.uri) + self.tail


@dataclass(eq=False)
class Attribute:
    ns: int
    name: int
    raw_value: int
    data_type: int
    data: int
    size: int = 8
    res0: int = 0
    extra: bytes = b''

    def renumber(self, at: int) -> None:
        self.ns = _shift(self.ns, at)
        self.name = _shift(self.name, at)
        self.raw_value = _shift(self.raw_value, at)
        if self.data_type == TYPE_STRING:
            self.data = _shift(self.data, at)

    def serialize(self) -> bytes:
        return struct.pack('<IIIHBBI', self.ns, self.name, self.raw_value,
                           self.size, self.res0, self.data_type, self.data) + self.extra


@dataclass(eq=False)
class Element(Node):
    ns: int = NO_INDEX
    name: int = NO_INDEX
    attributes: List[Attribute] = field(default_factory=list)
    id_index: int = 0
    class_index: int = 0
    style_index: int = 0
    attr_start: int = _ATTR_SIZE
    attr_size: int = _ATTR_SIZE
    gap: bytes = b''
    tail: bytes = b''
    children: List["Element"] = field(default_factory=list, repr=False)
    parent: Optional["Element"] = field(default=None, repr=False)
    end: Optional["EndElement"] = field(default=None, repr=False)

    chunk_type = CHUNK_START_ELEM

    def string_refs(self) -> List[str]:
        return ['comment', 'ns', 'name']

    def renumber(self, at: int) -> None:
        super().renumber(at)
        for a in self.attributes:
            a.renumber(at)

    def body(self) -> bytes:
        out = struct.pack('<IIHHHHHH', self.ns, self.name, self.attr_start, self.attr_size,
                          len(self.attributes), self.id_index, self.class_index,
                          self.style_index)
        out += self.gap
        for a in self.attributes:
            out += a.serialize()
        return out + self.tail


@dataclass(eq=False)
class EndElement(Node):
    ns: int = NO_INDEX
    name: int = NO_INDEX
    tail: bytes = b''

    chunk_type = CHUNK_END_ELEM

    def string_refs(self) -> List[str]:
        return ['comment', 'ns', 'name']

    def body(self) -> bytes:
        return struct.pack('<II', self.ns, self.name) + self.tail


@dataclass(eq=False)
class CDataNode(Node):
    data: int = NO_INDEX
    typed: bytes = b'\x08\x00\x00\x00\x00\x00\x00\x00'
    tail: bytes = b''

    chunk_type = CHUNK_CDATA

    def string_refs(self) -> List[str]:
        return ['comment', 'data']

    def body(self) -> bytes:
        return struct.pack('<I', self.data) + self.typed + self.tail


@dataclass(eq=False)
class RawChunk:
    """Chunk of a type this codec does not interpret; emitted verbatim."""
    data: bytes

    def renumber(self, at: int) -> None:
        pass

    def serialize(self) -> bytes:
        return self.data


def _parse_node(chunk: bytes):
    ctype, hdr, size = struct.unpack_from('<HHI', chunk, 0)
    if hdr < _NODE_HDR:
        raise MalformedManifest(f"node chunk 0x{ctype:04x} has short header ({hdr})")
    line, comment = struct.unpack_from('<II', chunk, 8)
    header_extra = bytes(chunk[_NODE_HDR:hdr])
    body = bytes(chunk[hdr:size])

    if ctype in (CHUNK_START_NS, CHUNK_END_NS):
        prefix, uri = struct.unpack_from('<II', body, 0)
        return NamespaceNode(line, comment, header_extra, prefix, uri,
                             ctype == CHUNK_END_NS, body[8:])
    if ctype == CHUNK_END_ELEM:
        ns, name = struct.unpack_from('<II', body, 0)
        return EndElement(line, comment, header_extra, ns, name, body[8:])
    if ctype == CHUNK_CDATA:
        data = struct.unpack_from('<I', body, 0)[0]
        return CDataNode(line, comment, header_extra, data, body[4:12], body[12:])

    # start element
    (ns, name, attr_start, attr_size, count,
     id_index, class_index, style_index) = struct.unpack_from('<IIHHHHHH', body, 0)
    if attr_size < _ATTR_SIZE or attr_start < _ATTR_SIZE:
        raise MalformedManifest(f"unsupported attribute layout (start={attr_start}, size={attr_size})")
    attrs = []
    pos = attr_start
    for _ in range(count):
        a = struct.unpack_from('<IIIHBBI', body, pos)
        attrs.append(Attribute(a[0], a[1], a[2], a[5], a[6], a[3], a[4],
                               body[pos + _ATTR_SIZE:pos + attr_size]))
        pos += attr_size
    if pos > len(body):
        raise MalformedManifest("attributes run past their element chunk")
    return Element(line, comment, header_extra, ns, name, attrs, id_index, class_index,
                   style_index, attr_start, attr_size, body[_ATTR_SIZE:attr_start], body[pos:])


# ═══════════════════════════════════════════════════════════════════════════════
#  T R E E
# ═══════════════════════════════════════════════════════════════════════════════
class ManifestTree:
    """Parsed compiled XML document. `nodes` is document order; elements also form a tree."""

    def __init__(self, pool: StringPool, resmap: List[int], nodes: list,
                 resmap_header: Optional[bytes] = None, xml_header_extra: bytes = b''):
        self.pool = pool
        self.resmap = resmap
        self.nodes = nodes
        self._resmap_header = resmap_header
        self._xml_header_extra = xml_header_extra
        self.root: Optional[Element] = None
        self._link()

    # ── parsing ──────────────────────────────────────────────────────────────
    @classmethod
    def parse(cls, data: bytes) -> "ManifestTree":
        try:
            return cls._parse(data)
        except MalformedManifest:
            raise
        except (struct.error, IndexError, UnicodeDecodeError, ValueError) as exc:
            raise MalformedManifest(f"cannot parse compiled manifest: {exc}") from exc

    @classmethod
    def _parse(cls, data: bytes) -> "ManifestTree":
        if len(data) < 8:
            raise MalformedManifest("manifest shorter than its header")
        ctype, hdr, size = struct.unpack_from('<HHI', data, 0)
        if ctype != CHUNK_XML or hdr < 8:
            raise MalformedManifest(f"bad compiled XML header (type=0x{ctype:04x}, hdr={hdr})")
        if size > len(data):
            raise MalformedManifest(f"declared size {size} exceeds data ({len(data)})")

        pool, resmap, resmap_header, nodes = None, [], None, []
        pos = hdr
        while pos + 8 <= size:
            ctype, chdr, csize = struct.unpack_from('<HHI', data, pos)
            if csize < 8 or pos + csize > size:
                raise MalformedManifest(f"chunk @ {pos} has invalid size {csize}")
            chunk = data[pos:pos + csize]
            if ctype == CHUNK_STRING_POOL:
                if pool is not None:
                    raise MalformedManifest("more than one string pool")
                pool = StringPool.parse(chunk)
            elif ctype == CHUNK_RESMAP:
                if resmap_header is not None:
                    raise MalformedManifest("more than one resource map")
                resmap_header = bytes(chunk[:chdr])
                resmap = list(struct.unpack_from(f'<{(csize - chdr) // 4}I', chunk, chdr))
            elif CHUNK_START_NS <= ctype <= CHUNK_CDATA:
                if pool is None:
                    raise MalformedManifest("element before string pool")
                nodes.append(_parse_node(chunk))
            else:
                nodes.append(RawChunk(bytes(chunk)))
            pos += csize
        if pool is None:
            raise MalformedManifest("no string pool")

        tree = cls(pool, resmap, nodes, resmap_header, bytes(data[8:hdr]))
        tree._check_indices()
        return tree

    def _link(self) -> None:
        stack: List[Element] = []
        self.root = None
        for node in self.nodes:
            if isinstance(node, Element):
                node.children = []
                node.parent = stack[-1] if stack else None
                if node.parent is not None:
                    node.parent.children.append(node)
                elif self.root is None:
                    self.root = node
                stack.append(node)
            elif isinstance(node, EndElement):
                if not stack:
                    raise MalformedManifest("end element without a start element")
                start = stack.pop()
                if (start.ns, start.name) != (node.ns, node.name):
                    raise MalformedManifest(
                        f"element {self.pool.get(start.name)!r} closed by "
                        f"{self.pool.get(node.name)!r}")
                start.end = node
        if stack:
            raise MalformedManifest(f"unterminated element {self.pool.get(stack[-1].name)!r}")
        if self.root is None:
            raise MalformedManifest("document has no root element")

    def _check_indices(self) -> None:
        n = len(self.pool)

        def ok(idx: int) -> None:
            if idx != NO_INDEX and idx >= n:
                raise MalformedManifest(f"dangling string index {idx} (pool has {n})")

        for node in self.nodes:
            if isinstance(node, RawChunk):
                continue
            for attr in node.string_refs():
                ok(getattr(node, attr))
            if isinstance(node, Element):
                for a in node.attributes:
                    ok(a.ns)
                    ok(a.name)
                    ok(a.raw_value)
                    if a.data_type == TYPE_STRING:
                        ok(a.data)

    # ── serialization ────────────────────────────────────────────────────────
    def serialize(self) -> bytes:
        parts = [self.pool.serialize()]
        if self.resmap or self._resmap_header is not None:
            hdr = self._resmap_header or struct.pack('<HHI', CHUNK_RESMAP, 8, 0)
            hdr_size = len(hdr)
            size = hdr_size + 4 * len(self.resmap)
            hdr = struct.pack('<HHI', CHUNK_RESMAP, hdr_size, size) + hdr[8:]
            parts.append(hdr + struct.pack(f'<{len(self.resmap)}I', *self.resmap))
        parts.extend(node.serialize() for node in self.nodes)
        body = b''.join(parts)
        hdr_size = 8 + len(self._xml_header_extra)
        return (struct.pack('<HHI', CHUNK_XML, hdr_size, hdr_size + len(body))
                + self._xml_header_extra + body)

    # ── strings ──────────────────────────────────────────────────────────────
    def string(self, idx: int) -> Optional[str]:
        return self.pool.get(idx)

    def value_index(self, value: str) -> int:
        """Pool index for a string value (any position is fine for values)."""
        return self.pool.intern(value)

    def plain_name_index(self, value: str) -> int:
        """Index for a name that must NOT be bound to a resource id."""
        return self.pool.intern(value, start=len(self.resmap))

    def namespace_index(self, uri: str) -> int:
        for node in self.nodes:
            if isinstance(node, NamespaceNode) and not node.end and self.pool.get(node.uri) == uri:
                return node.uri
        raise MalformedManifest(f"namespace {uri!r} is not declared")

    def attribute_name_index(self, name: str, res_id: int) -> int:
        """
        Index of `name` bound to `res_id`. When no such binding exists the
        string is inserted at the resource-map boundary and the whole
        document is renumbered.
        """
        for i, rid in enumerate(self.resmap):
            if rid == res_id and self.pool.strings[i] == name:
                return i
        at = len(self.resmap)
        self.pool.insert(at, name)
        self.resmap.append(res_id)
        for node in self.nodes:
            node.renumber(at)
        return at

    def resource_id(self, name_idx: int) -> Optional[int]:
        if name_idx < len(self.resmap):
            return self.resmap[name_idx]
        return None

    # ── traversal ────────────────────────────────────────────────────────────
    def iter_elements(self, name: Optional[str] = None) -> Iterator[Element]:
        for node in self.nodes:
            if isinstance(node, Element) and (name is None or self.pool.get(node.name) == name):
                yield node

    def element_name(self, el: Element) -> Optional[str]:
        return self.pool.get(el.name)

    def children(self, el: Element, name: Optional[str] = None) -> List[Element]:
        return [c for c in el.children if name is None or self.pool.get(c.name) == name]

    def first(self, parent: Element, name: str) -> Optional[Element]:
        for c in parent.children:
            if self.pool.get(c.name) == name:
                return c
        return None

    # ── attributes ───────────────────────────────────────────────────────────
    def find_attribute(self, el: Element, name: str,
                       res_id: Optional[int] = None) -> Optional[Attribute]:
        """Match by resource id when one is given, else by plain name."""
        for a in el.attributes:
            if res_id is not None:
                if self.resource_id(a.name) == res_id:
                    return a
            elif self.pool.get(a.name) == name and self.resource_id(a.name) is None:
                return a
        return None

    def attribute_value(self, a: Attribute):
        """Python value of an attribute: str, bool, int or None."""
        if a.data_type == TYPE_STRING:
            return self.pool.get(a.data)
        if a.data_type == TYPE_INT_BOOLEAN:
            return a.data != 0
        if a.data_type == TYPE_NULL:
            return None
        if a.raw_value != NO_INDEX:
            return self.pool.get(a.raw_value)
        return a.data

    def set_attribute(self, el: Element, name: str, res_id: Optional[int], data_type: int,
                      data: int, raw_value: int = NO_INDEX, ns_uri: Optional[str] = None) -> Attribute:
        """
        Update the attribute in place or insert it in resource-id order.
        String indices passed in `data` / `raw_value` may be taken before the
        call; they are shifted if binding the name renumbers the pool.
        """
        existing = self.find_attribute(el, name, res_id)
        if existing is not None:
            existing.data_type = data_type
            existing.data = data
            existing.raw_value = raw_value
            return existing

        boundary = len(self.resmap)
        if res_id is not None:
            name_idx = self.attribute_name_index(name, res_id)
            if len(self.resmap) > boundary:
                raw_value = _shift(raw_value, boundary)
                if data_type == TYPE_STRING:
                    data = _shift(data, boundary)
        else:
            name_idx = self.plain_name_index(name)
        ns_idx = self.namespace_index(ns_uri) if ns_uri else NO_INDEX

        attr = Attribute(ns_idx, name_idx, raw_value, data_type, data,
                         extra=b'\x00' * (el.attr_size - _ATTR_SIZE))
        pos = len(el.attributes)
        for i, a in enumerate(el.attributes):
            rid = self.resource_id(a.name)
            if res_id is None:
                if rid is None and (self.pool.get(a.name) or '') > name:
                    pos = i
                    break
            elif rid is None or rid > res_id:
                pos = i
                break
        self._edit_attributes(el, lambda attrs: attrs.insert(pos, attr))
        return attr

    @staticmethod
    def _edit_attributes(el: Element, edit: Callable[[List[Attribute]], None]) -> None:
        # id/class/style indices are 1-based positions into the attribute list
        marked = {k: (el.attributes[i - 1] if 0 < i <= len(el.attributes) else None)
                  for k, i in (('id_index', el.id_index), ('class_index', el.class_index),
                               ('style_index', el.style_index))}
        edit(el.attributes)
        for k, a in marked.items():
            setattr(el, k, el.attributes.index(a) + 1 if a in el.attributes else 0)

    # ── elements ─────────────────────────────────────────────────────────────
    def new_element(self, parent: Element, name: str) -> Element:
        """Create `<name/>` as the last child of `parent`."""
        name_idx = self.plain_name_index(name)
        el = Element(line=parent.line, ns=NO_INDEX, name=name_idx)
        end = EndElement(line=parent.line, ns=NO_INDEX, name=name_idx)
        at = self.nodes.index(parent.end)
        self.nodes[at:at] = [el, end]
        self._link()
        return el

    def remove_element(self, el: Element) -> None:
        start = self.nodes.index(el)
        stop = self.nodes.index(el.end)
        del self.nodes[start:stop + 1]
        self._link()


def string_attr(tree: ManifestTree, value: str) -> Dict[str, int]:
    """kwargs for ManifestTree.set_attribute describing a string value."""
    idx = tree.value_index(value)
    return {'data_type': TYPE_STRING, 'data': idx, 'raw_value': idx}
