#!/usr/bin/python3

import argparse
from collections import defaultdict
from itertools import product
import re
from typing import NamedTuple, FrozenSet, Optional, Tuple, Union

# Operand slots in the order the database lists the operands.
ENCODING_OPORDER = {
    "NP": (),
    "M": ("modrm",),
    "R": ("modreg",),
    "MI": ("modrm", "imm"),
    "MR": ("modrm", "modreg"),
    "RM": ("modreg", "modrm"),
    "MRI": ("modrm", "modreg", "imm"),
    "RMI": ("modreg", "modrm", "imm"),
    "RVM": ("modreg", "vexreg", "modrm"),
    "RVMI": ("modreg", "vexreg", "modrm", "imm"),
    "RVMR": ("modreg", "vexreg", "modrm", "imm"), # imm[7:4] selects a register
    "RMV": ("modreg", "modrm", "vexreg"),
    "VM": ("vexreg", "modrm"),
    "VMI": ("vexreg", "modrm", "imm"),
    "MVR": ("modrm", "vexreg", "modreg"),
    "MRV": ("modrm", "modreg", "vexreg"),
}

OPKIND_CANONICALIZE = {
    "I": "IMM", # immediate
    "M": "MEM", # ModRM.r/m selects memory only
    "R": "GP", # ModRM.r/m selects GP
        "B": "GP", # VEX.vvvv selects GP
        "E": "GP", # ModRM.r/m selects GP or memory
        "G": "GP", # ModRM.reg selects GP
    "P": "MMX", # ModRM.reg selects MMX
        "N": "MMX", # ModRM.r/m selects MMX
        "Q": "MMX", # ModRM.r/m selects MMX or memory
    "V": "XMM", # ModRM.reg selects XMM
        "H": "XMM", # VEX.vvvv selects XMM
        "L": "XMM", # bits7:4 of imm8 select XMM
        "U": "XMM", # ModRM.r/m selects XMM
        "W": "XMM", # ModRM.r/m selects XMM or memory
    "S": "SEG", # ModRM.reg selects SEG
    "C": "CR", # ModRM.reg selects CR
    "D": "DR", # ModRM.reg selects DR

    # Custom names
    "F": "FPU",
    "K": "MASK",
    "T": "TMM",
    "Z": "BND",
}
OPKIND_SIZES = {
    "b": 1,
    "w": 2,
    "d": 4,
    "ss": 4, # Scalar single of XMM (d)
    "q": 8,
    "sd": 8, # Scalar double of XMM (q)
    "dq": 16,
    "qq": 32,
    "oq": 64, # oct-quadword
    "": 0,
    "v": -1, # operand size (w/d/q)
    "y": -1, # operand size (d/q)
    "x": -2, # vector size
    "h": -3, # half x
    "f": -4, # fourth x
    "e": -5, # eighth x
}
# ModRM.r/m kinds that also accept memory
MODRM_TYPES = {"E": "rm", "Q": "rm", "W": "rm", "M": "m"}

COMPACT_FLAGS = {
    "k": "MASK",
    "b": "BCST",
    "e": "SAE",
    "r": "ER",
}

# From Intel SDM: broadcast element size, required EVEX.W, memory size per VL
TUPLE_TYPES = {
    "TUPLE_FULL_16":      (2,    "0",  (  16,   32,   64)),
    "TUPLE_FULL_32":      (4,    "0",  (  16,   32,   64)),
    "TUPLE_FULL_64":      (8,    "1",  (  16,   32,   64)),
    "TUPLE_HALF_16":      (2,    "0",  (   8,   16,   32)),
    "TUPLE_HALF_32":      (4,    "0",  (   8,   16,   32)),
    "TUPLE_HALF_64":      (8,    "1",  (   8,   16,   32)),
    "TUPLE_QUARTER_16":   (2,    "0",  (   4,    8,   16)),
    "TUPLE_FULL_MEM":     (None, None, (  16,   32,   64)),
    "TUPLE_HALF_MEM":     (None, None, (   8,   16,   32)),
    "TUPLE_QUARTER_MEM":  (None, None, (   4,    8,   16)),
    "TUPLE_EIGHTH_MEM":   (None, None, (   2,    4,    8)),
    "TUPLE1_SCALAR_8":    (None, None, (   1,    1,    1)),
    "TUPLE1_SCALAR_16":   (None, None, (   2,    2,    2)),
    "TUPLE1_SCALAR_32":   (None, "0",  (   4,    4,    4)),
    "TUPLE1_SCALAR_64":   (None, "1",  (   8,    8,    8)),
    "TUPLE1_SCALAR_OPSZ": (None, None, (   0,    0,    0)),
    "TUPLE1_FIXED_32":    (None, None, (   4,    4,    4)),
    "TUPLE1_FIXED_64":    (None, None, (   8,    8,    8)),
    "TUPLE2_32":          (None, "0",  (   8,    8,    8)),
    "TUPLE2_64":          (None, "1",  (None,   16,   16)),
    "TUPLE4_32":          (None, "0",  (None,   16,   16)),
    "TUPLE4_64":          (None, "1",  (None, None,   32)),
    "TUPLE8_32":          (None, "0",  (None, None,   32)),
    "TUPLE_MEM128":       (None, None, (  16,   16,   16)),
    "TUPLE_MOVDDUP":      (None, None, (   8,   32,   64)),
}

class OpKind(NamedTuple):
    regkind: str
    sizestr: str

    SZ_OP = -1
    SZ_VEC = -2
    SZ_VEC_HALF = -3
    SZ_VEC_QUARTER = -4
    SZ_VEC_EIGHTH = -5

    def abssize(self, opsz=None, vecsz=None):
        res = opsz if self.size == self.SZ_OP else \
              vecsz if self.size == self.SZ_VEC else \
              vecsz >> 1 if self.size == self.SZ_VEC_HALF else \
              vecsz >> 2 if self.size == self.SZ_VEC_QUARTER else \
              vecsz >> 3 if self.size == self.SZ_VEC_EIGHTH else self.size
        if res is None:
            raise Exception(f"unspecified operand size {self}")
        return res
    @property
    def kind(self):
        return OPKIND_CANONICALIZE[self.regkind]
    @property
    def size(self):
        return OPKIND_SIZES[self.sizestr]
    @classmethod
    def parse(cls, op):
        if op[0] not in OPKIND_CANONICALIZE or op[1:] not in OPKIND_SIZES:
            raise Exception(f"invalid operand {op}")
        return cls(op[0], op[1:])

class InstrDesc(NamedTuple):
    mnemonic: str
    encoding: str
    operands: Tuple[OpKind, ...]
    flags: FrozenSet[str]

    @classmethod
    def parse(cls, desc):
        desc = desc.split()
        if len(desc) < 6:
            raise Exception(f"truncated instruction description {' '.join(desc)}")
        if desc[0] not in ENCODING_OPORDER:
            raise Exception(f"unknown encoding {desc[0]}")
        mnem, _, compactDesc = desc[5].partition("+")
        if set(compactDesc) - set(COMPACT_FLAGS):
            raise Exception(f"unknown compact flags in {desc[5]}")
        flags = frozenset(desc[6:] + [COMPACT_FLAGS[c] for c in compactDesc])
        operands = tuple(OpKind.parse(op) for op in desc[1:5] if op != "-")
        return cls(mnem, desc[0], operands, flags)

    def dynsizes(self):
        dynopsz = set(op.size for op in self.operands if op.size < 0)
        if OpKind.SZ_OP in dynopsz and len(dynopsz) > 1:
            raise Exception(f"conflicting dynamic operand sizes in {self}")
        return dynopsz

    @property
    def tupletype(self):
        tts = [s for s in self.flags if s.startswith("TUPLE")]
        if len(tts) > 1:
            raise Exception(f"multiple tuple types in {self}")
        return tts[0] if tts else None

opcode_regex = re.compile(
     r"^(?:(?P<prefixes>(?P<vex>E?VEX\.)?(?P<legacy>NP|66|F2|F3)\." +
                     r"(?:W(?P<rexw>[01])\.)?(?:L(?P<vexl>0|1|12|2|IG)\.)?))?" +
     r"(?P<escape>0f38|0f3a|0f|M[567]\.|)" +
     r"(?P<opcode>[0-9a-f]{2})" +
     r"(?:/(?P<modreg>[0-7]|[rm][0-7]?|[0-7][rm])|(?P<opcext>[c-f][0-9a-f]))?$")

OPCODE_MAPS = ["", "0F", "0F38", "0F3A", "M5", "M6", "M7"]

class Opcode(NamedTuple):
    prefix: Union[None, str] # None/NP/66/F2/F3
    escape: int # [0, 0f, 0f38, 0f3a, M5, M6, M7]
    opc: int
    # Fixed ModRM.mod ("r"/"m"), ModRM.reg, ModRM.rm
    modrm: Tuple[Union[None, str], Union[None, int], Union[None, int]]
    vex: int # 0 = legacy, 1 = VEX, 2 = EVEX
    vexl: Union[str, None] # 0, 1, 12, 2, IG, None = from operand sizes
    rexw: Union[str, None] # 0, 1, None = ignored

    @classmethod
    def parse(cls, opcode_string):
        match = opcode_regex.match(opcode_string)
        if match is None:
            raise Exception(f"invalid opcode {opcode_string}")

        opcext = int(match.group("opcext") or "0", 16)
        modreg = match.group("modreg")
        if opcext:
            modrm = "r", (opcext >> 3) & 7, opcext & 7
        elif modreg:
            if modreg[0] in "rm":
                modrm = modreg[0], None, int(modreg[1:]) if modreg[1:] else None
            else:
                modrm = modreg[1:] or None, int(modreg[0]), None
        else:
            modrm = None, None, None

        return cls(
            prefix=match.group("legacy"),
            escape=["", "0f", "0f38", "0f3a", "M5.", "M6.", "M7."].index(match.group("escape")),
            opc=int(match.group("opcode"), 16),
            modrm=modrm,
            vex=[None, "VEX.", "EVEX."].index(match.group("vex")),
            vexl=match.group("vexl"),
            rexw=match.group("rexw"),
        )

def verify_entry(opcode, desc):
    oporder = ENCODING_OPORDER[desc.encoding]
    if len(desc.operands) != len(oporder):
        raise Exception(f"operand count mismatch {opcode}, {desc}")
    expected_vexkinds = "BHK" if opcode.vex else "BHRF"
    for slot, opkind in zip(oporder, desc.operands):
        if slot == "modreg" and opkind.regkind not in "GPVSCDFKT":
            raise Exception(f"modreg operand-regkind mismatch {opcode}, {desc}")
        if slot == "vexreg" and opkind.regkind not in expected_vexkinds:
            raise Exception(f"vexreg operand-regkind mismatch {opcode}, {desc}")
        if slot == "imm" and opkind.regkind not in "IL":
            raise Exception(f"imm operand-regkind mismatch {opcode}, {desc}")
    if opcode.escape == 0 and opcode.vex:
        raise Exception(f"VEX opcode without escape {opcode}, {desc}")
    if opcode.vex and opcode.prefix not in ("NP", "66", "F2", "F3"):
        raise Exception(f"VEX/EVEX must have mandatory prefix {opcode}, {desc}")
    if opcode.vexl == "IG" and desc.dynsizes() - {OpKind.SZ_OP}:
        raise Exception(f"(E)VEX.LIG with dynamic vector size {opcode}, {desc}")
    if OpKind.SZ_OP in desc.dynsizes() and opcode.rexw is not None:
        raise Exception(f"unexpected W specifier {opcode}, {desc}")
    if "VSIB" in desc.flags and opcode.modrm[0] != "m":
        raise Exception(f"VSIB for non-memory opcode {opcode}, {desc}")
    if desc.tupletype is not None and desc.tupletype not in TUPLE_TYPES:
        raise Exception(f"unknown tuple type {opcode}, {desc}")
    if desc.tupletype is not None and opcode.vex != 2:
        raise Exception(f"tuple type without EVEX {opcode}, {desc}")

class Operand(NamedTuple):
    kind: str # canonical kind, MEM for memory variants
    width: int # bytes
    slot: str # modrm/modreg/vexreg/imm
    access: str # w = destination, r = source

class InstructionRecord(NamedTuple):
    mnemonic: str
    operands: Tuple[Operand, ...]
    encoding: str # legacy/VEX/EVEX
    prefix: str # NP/66/F2/F3, empty for legacy
    opmap: str # "", 0F, 0F38, 0F3A, M5-M7
    rexw: str # W0/W1/WIG
    vl: str # 128/256/512/LIG
    opcode: int
    digit: Optional[int] # ModRM.reg opcode extension
    fixedrm: Optional[int] # ModRM.rm opcode extension
    tupletype: Optional[str]
    bcst: bool
    rounding: str # "", sae, er
    masking: bool
    vsib: bool
    opsize: int # 0, or GP operand size in bits
    isa: str
    vendor: str # INTEL/AMD
    flags: FrozenSet[str]

def expand_entry(opcode, desc):
    """Expand one database line into one record per encoding variant."""
    oporder = ENCODING_OPORDER[desc.encoding]
    dynsizes = desc.dynsizes()

    opsizes = [0]
    if OpKind.SZ_OP in dynsizes:
        opsizes = [32, 64] if opcode.vex else [16, 32, 64]
    if not opcode.vex:
        vecsizes = ["128"]
    elif opcode.vexl == "IG":
        vecsizes = ["LIG"]
    elif opcode.vexl:
        vecsizes = [str(128 << int(c)) for c in opcode.vexl]
    elif dynsizes - {OpKind.SZ_OP}:
        vecsizes = ["128", "256", "512"] if opcode.vex == 2 else ["128", "256"]
    else:
        vecsizes = ["LIG"]

    # Register (r), memory (m), broadcast (b) or immediate (i) per operand
    optypes = []
    for slot, opkind in zip(oporder, desc.operands):
        if slot == "modrm":
            types = MODRM_TYPES.get(opkind.regkind, "r")
            if opcode.modrm[0]:
                types = types.replace("m" if opcode.modrm[0] == "r" else "r", "")
            if "BCST" in desc.flags and "m" in types:
                types += "b"
            if not types:
                raise Exception(f"modrm operand-regkind mismatch {opcode}, {desc}")
        elif opkind.kind == "IMM":
            types = "i"
        else:
            types = "r"
        optypes.append(types)

    roundings = [""]
    if "SAE" in desc.flags:
        roundings.append("sae")
    elif "ER" in desc.flags:
        roundings.append("er")

    isas = sorted(s[4:] for s in desc.flags if s.startswith("ISA_"))
    rexw = {"0": "W0", "1": "W1", None: "WIG"}[opcode.rexw]

    for opsize, vl, ots, rounding in product(opsizes, vecsizes, product(*optypes), roundings):
        has_memory = "m" in ots or "b" in ots
        if rounding and (vl not in ("512", "LIG") or has_memory):
            continue # SAE/ER only works with 512 bit width and no memory

        vecsz = 16 if vl == "LIG" else int(vl) // 8
        operands = tuple(Operand(
            kind="MEM" if ot in "mb" else opkind.kind,
            width=opkind.abssize(opsize // 8, vecsz),
            slot=slot,
            access="w" if i == 0 else "r",
        ) for i, (slot, opkind, ot) in enumerate(zip(oporder, desc.operands, ots)))

        yield InstructionRecord(
            mnemonic=desc.mnemonic,
            operands=operands,
            encoding=["legacy", "VEX", "EVEX"][opcode.vex],
            prefix=opcode.prefix or "",
            opmap=OPCODE_MAPS[opcode.escape],
            rexw=rexw if not opsize or not opcode.vex else "W1" if opsize == 64 else "W0",
            vl=vl,
            opcode=opcode.opc,
            digit=opcode.modrm[1],
            fixedrm=opcode.modrm[2],
            tupletype=desc.tupletype,
            bcst="b" in ots,
            rounding=rounding,
            masking="MASK" in desc.flags,
            vsib="VSIB" in desc.flags,
            opsize=opsize,
            isa=isas[0] if isas else "",
            vendor="AMD" if "VENDOR_AMD" in desc.flags else "INTEL",
            flags=desc.flags,
        )

class InstrDatabase(NamedTuple):
    path: str
    entries: Tuple[Tuple[Opcode, InstrDesc], ...]

    @classmethod
    def parse(cls, path, lines):
        entries = []
        for line in lines:
            if not line.strip() or line.lstrip()[0] == "#": continue
            parts = line.split(maxsplit=1)
            if len(parts) != 2:
                raise Exception(f"malformed line in {path}: {line!r}")
            opcode, desc = Opcode.parse(parts[0]), InstrDesc.parse(parts[1])
            verify_entry(opcode, desc)
            entries.append((opcode, desc))
        return cls(path, tuple(entries))

    def records(self, with_undoc=False):
        for opcode, desc in self.entries:
            if "UNDOC" in desc.flags and not with_undoc:
                continue
            yield from expand_entry(opcode, desc)

def open_database(path):
    with open(path) as f:
        return InstrDatabase.parse(path, f.read().splitlines())

class Token(NamedTuple):
    slot: str # r, v, rm, i, hr (is4), k (writemask), empty for rounding
    cls: str # operand class, e.g. Yxr or Ym128

class EncodingDesc(NamedTuple):
    encoding: str
    prefix: str
    opmap: str
    rexw: str
    vl: str
    opcode: int
    digit: Optional[int]
    tupletype: Optional[str]
    bcst: bool
    rounding: str
    masking: bool
    zeroing: bool
    memory: bool
    opsize: int
    isa: str
    vendor: str

class Normalized(NamedTuple):
    mnemonic: str
    form: Tuple[Token, ...]
    desc: EncodingDesc

SLOT_CODES = {"modreg": "r", "vexreg": "v", "modrm": "rm", "imm": "i"}
# (VEX, EVEX) class by register width
VECTOR_CLASSES = {16: ("Yxr", "YxrEvex"), 32: ("Yyr", "YyrEvex"), 64: ("Yzr", "Yzr")}
VSIB_CLASSES = {16: ("Yxvm", "YxvmEvex"), 32: ("Yyvm", "YyvmEvex"), 64: ("Yzvm", "Yzvm")}
GP_CLASSES = {4: "Yrl", 8: "Yrq"}
ROUNDING_CLASSES = {"er": "Yer", "sae": "Ysae"}

# Keep established spellings for the 32-bit forms
WIDTH_ALTNAMES = {
    "VCVTSD2SI": ("VCVTSD2SI", "VCVTSD2SIQ"),
    "VCVTSS2SI": ("VCVTSS2SI", "VCVTSS2SIQ"),
    "VCVTTSD2SI": ("VCVTTSD2SI", "VCVTTSD2SIQ"),
    "VCVTTSS2SI": ("VCVTTSS2SI", "VCVTTSS2SIQ"),
}
VL_SUFFIXES = {"128": "X", "256": "Y", "512": "Z"}
# Stored without size suffix; the suffix follows the width of the indexed operand
SIZED_MNEMONICS = {"EVX_PEXTR": 0, "EVX_PBROADCAST": 1, "EVX_PINSR": 2}
WIDTH_SUFFIXES = {1: "B", 2: "W", 4: "D", 8: "Q"}

def bcst_size(tupletype):
    bcst = TUPLE_TYPES[tupletype][0] if tupletype else None
    if bcst is None:
        raise Exception(f"broadcast on incompatible tuple type {tupletype}")
    return bcst

def operand_token(record, op):
    evex = record.encoding == "EVEX"
    slot = SLOT_CODES[op.slot]
    if op.kind == "XMM":
        cls = VECTOR_CLASSES[max(op.width, 16)][evex]
        if op.slot == "imm":
            slot = "hr"
    elif op.kind == "MASK":
        cls = "Yk"
    elif op.kind == "GP":
        cls = GP_CLASSES.get(op.width)
    elif op.kind == "MEM" and record.vsib:
        cls = VSIB_CLASSES[max(op.width, 16)][evex]
    elif op.kind == "MEM" and record.bcst:
        elem = bcst_size(record.tupletype)
        cls = f"Ym{elem * 8}bcst" if elem in (4, 8) else None
    elif op.kind == "MEM":
        cls = f"Ym{op.width * 8 or ''}" + ("Evex" if evex else "")
    elif op.kind == "IMM":
        cls = "Yu8" if op.width == 1 else None
    else:
        cls = None
    return Token(slot, cls) if cls else None

def canonical_name(record, memory):
    name, opsize = record.mnemonic, record.opsize
    if name in ("EVX_MOV_G2X", "EVX_MOV_X2G"):
        # Same spelling as the VEX forms VMOVD_G2X/VMOVQ_G2X
        name, opsize = "VMOV" + "DQ"[opsize == 64], 0
    elif name in SIZED_MNEMONICS:
        width = record.operands[SIZED_MNEMONICS[name]].width
        if width not in WIDTH_SUFFIXES:
            raise Exception(f"no size suffix for {width}-byte operand of {name}")
        name, opsize = "V" + name[4:] + WIDTH_SUFFIXES[width], 0
    elif name.startswith("EVX_"):
        name = "V" + name[4:]
    name = name.replace("_G2X", "").replace("_X2G", "")
    if opsize:
        altnames = WIDTH_ALTNAMES.get(name)
        name = altnames[record.opsize == 64] if altnames else name + "LQ"[record.opsize == 64]
    if "ENC_VLSZ" in record.flags and memory:
        name += VL_SUFFIXES.get(record.vl, "")
    return name

def normalize(record):
    """Map a record to its output mnemonic, operand form and encoding attributes.

    Returns None for records outside the modeled subset (legacy encodings,
    unsupported opcode maps or operand kinds). Raises on inconsistent records.
    """
    if record.encoding == "legacy" or record.fixedrm is not None:
        return None
    if record.opmap not in ("0F", "0F38", "0F3A"):
        return None

    tokens = []
    for op in record.operands:
        token = operand_token(record, op)
        if token is None:
            return None
        tokens.append(token)
    if record.masking:
        tokens.insert(1, Token("k", "Yknot0"))
    if record.rounding:
        tokens.append(Token("", ROUNDING_CLASSES[record.rounding]))

    dest = record.operands[0] if record.operands else None
    memory = any(op.kind == "MEM" for op in record.operands)
    # EVEX.z needs a register destination and is unavailable for VSIB
    zeroing = (record.masking and not record.vsib and dest is not None and
               dest.access == "w" and dest.kind == "XMM")

    desc = EncodingDesc(
        encoding=record.encoding,
        prefix=record.prefix,
        opmap=record.opmap,
        rexw=record.rexw,
        vl=record.vl,
        opcode=record.opcode,
        digit=record.digit,
        tupletype=record.tupletype,
        bcst=record.bcst,
        rounding=record.rounding,
        masking=record.masking,
        zeroing=zeroing,
        memory=memory,
        opsize=record.opsize,
        isa=record.isa,
        vendor=record.vendor,
    )
    return Normalized(canonical_name(record, memory), tuple(tokens), desc)

def is_evex_class(cls):
    return (cls.endswith("Evex") or cls.endswith("bcst") or
            cls in ("Yzr", "Yzvm", "Yknot0", "Yer", "Ysae"))

def is_vsib_class(cls):
    return cls[2:4] == "vm"

def is_memory_class(cls):
    return cls.startswith("Ym") or is_vsib_class(cls)

def is_evex_form(form):
    return any(is_evex_class(token.cls) for token in form)

def is_digit_form(form):
    # ModRM.reg holds an opcode extension when no operand occupies it
    slots = {token.slot for token in form}
    return "rm" in slots and "r" not in slots

def specificity(form):
    classes = [token.cls for token in form]
    if any(cls.endswith("bcst") or cls in ROUNDING_CLASSES.values() for cls in classes):
        return 2
    if any(is_memory_class(cls) for cls in classes):
        return 1
    return 0

def form_text(form):
    return ", ".join(f"{token.slot}:{token.cls}" for token in form)

class Ytab(NamedTuple):
    zcase: str
    zoffset: int
    args: Tuple[str, ...]

class YtabGroup(NamedTuple):
    id: int
    form: Tuple[Token, ...]
    rows: Tuple[Ytab, ...]

    @property
    def name(self):
        return ytab_name(self.id)

def ytab_name(ytab):
    return f"_ytab{ytab}"

def ytab_row(form, evex, digit):
    tokens = form[::-1] # assembler operand order
    codes = [token.slot for token in tokens if token.slot]
    if digit:
        codes[-1] += "o"
    zcase = "_".join(["Zevex" if evex else "Zvex"] + codes)
    return Ytab(zcase, 3 if evex else 2, tuple(token.cls for token in tokens))

def ytab_rows(form):
    evex, digit = is_evex_form(form), is_digit_form(form)
    variants = [form]
    if any(token.slot == "k" for token in form):
        # VSIB requires a mask, otherwise it is optional
        if not any(is_vsib_class(token.cls) for token in form):
            variants.insert(0, tuple(token for token in form if token.slot != "k"))
    return tuple(ytab_row(variant, evex, digit) for variant in variants)

class YtabInterner:
    def __init__(self):
        self.ids = {}
        self.forms = []

    def intern(self, form):
        ytab = self.ids.get(form)
        if ytab is None:
            ytab = self.ids[form] = len(self.forms)
            self.forms.append(form)
        return ytab

    def groups(self):
        return tuple(YtabGroup(ytab, form, ytab_rows(form))
                     for ytab, form in enumerate(self.forms))

# Byte constants of the Go assembler (cmd/internal/obj/x86)
BYTE_VALUES = {
    "avxEscape": 1 << 6,

    "vex66": 1, "vexF3": 2, "vexF2": 3,
    "vexLIG": 0, "vex128": 0, "vex256": 1 << 2,
    "vexW0": 0, "vexW1": 1 << 7,
    "vex0F": 1 << 3, "vex0F38": 2 << 3, "vex0F3A": 3 << 3,

    "evex66": 1, "evexF3": 2, "evexF2": 3,
    "evexLIG": 0, "evex128": 0, "evex256": 1 << 2, "evex512": 2 << 2,
    "evexW0": 0, "evexW1": 1 << 7,
    "evex0F": 1 << 4, "evex0F38": 2 << 4, "evex0F3A": 3 << 4,

    "evexN1": 0 << 5, "evexN2": 1 << 5, "evexN4": 2 << 5, "evexN8": 3 << 5,
    "evexN16": 4 << 5, "evexN32": 5 << 5, "evexN64": 6 << 5, "evexN128": 7 << 5,
    "evexBcstN4": 1 << 3, "evexBcstN8": 2 << 3,
    "evexZeroingEnabled": 1 << 2,
    "evexRoundingEnabled": 1 << 1,
    "evexSaeEnabled": 1 << 0,
}
ENCODING_ORDER = {"legacy": 0, "VEX": 1, "EVEX": 2}
VL_ORDER = {"LIG": 0, "128": 1, "256": 2, "512": 3}

class OpByte(NamedTuple):
    text: str
    value: int

def or_byte(names):
    names = [name for name in names if name]
    value = 0
    for name in names:
        value |= BYTE_VALUES[name]
    return OpByte(" | ".join(names) or "0", value)

def disp8_name(desc):
    if desc.tupletype is None:
        if desc.memory:
            raise Exception(f"missing tuple type for EVEX memory operand {desc}")
        return None
    bcst, evexw, sizes = TUPLE_TYPES[desc.tupletype]
    # EVEX.W is used to distinguish 4/8-byte broadcast size
    if evexw and desc.rexw != "W" + evexw:
        raise Exception(f"incompatible EVEX.W {desc}")
    if desc.bcst:
        size = bcst
    else:
        size = sizes[max(VL_ORDER[desc.vl] - 1, 0)]
        if size == 0:
            size = desc.opsize // 8
    if not size:
        raise Exception(f"tuple type {desc.tupletype} undefined for VL {desc.vl} {desc}")
    return f"evexN{size}"

def op_bytes(desc):
    """Compute the prefix and opcode bytes of one entry."""
    pp = desc.prefix if desc.prefix != "NP" else ""
    if desc.encoding == "VEX":
        if desc.vl == "512":
            raise Exception(f"VEX encoding with 512-bit vector length {desc}")
        op = [or_byte(["avxEscape", "vex" + desc.vl, pp and "vex" + pp,
                       "vex" + desc.opmap, "vexW1" if desc.rexw == "W1" else "vexW0"])]
    elif desc.encoding == "EVEX":
        bcst = desc.bcst and f"evexBcstN{bcst_size(desc.tupletype)}"
        op = [or_byte(["avxEscape", "evex" + desc.vl, pp and "evex" + pp,
                       "evex" + desc.opmap, "evexW1" if desc.rexw == "W1" else "evexW0"]),
              or_byte([disp8_name(desc), bcst,
                       desc.zeroing and "evexZeroingEnabled",
                       desc.rounding == "er" and "evexRoundingEnabled",
                       desc.rounding == "sae" and "evexSaeEnabled"])]
    else:
        raise Exception(f"no prefix bytes for {desc.encoding} encoding {desc}")
    op.append(OpByte(f"{desc.opcode:#04x}", desc.opcode))
    if desc.digit is not None:
        op.append(OpByte(f"0{desc.digit}", desc.digit))
    return tuple(op)

def is_excluded(desc, exclude_vendors, exclude_isas):
    return desc.vendor in exclude_vendors or desc.isa in exclude_isas

def entry_key(norm, op):
    return (ENCODING_ORDER[norm.desc.encoding], VL_ORDER[norm.desc.vl],
            specificity(norm.form), norm.form, tuple(b.value for b in op),
            tuple(b.text for b in op))

def build_optab(normalized, exclude_vendors=("AMD",), exclude_isas=()):
    """Return (Normalized, op bytes) pairs sorted by mnemonic and matching order.

    Register forms come before memory forms, which come before broadcast and
    rounding forms; narrower vector lengths come first.
    """
    entries = {}
    for norm in normalized:
        if is_excluded(norm.desc, exclude_vendors, exclude_isas):
            continue
        if is_evex_form(norm.form) != (norm.desc.encoding == "EVEX"):
            raise Exception(f"operand form {form_text(norm.form)} contradicts "
                            f"{norm.desc.encoding} encoding of {norm.mnemonic}")
        if is_digit_form(norm.form) != (norm.desc.digit is not None):
            raise Exception(f"opcode extension mismatch for {norm.mnemonic} "
                            f"{form_text(norm.form)}, {norm.desc}")
        op = op_bytes(norm.desc)
        key = norm.mnemonic, entry_key(norm, op)
        # Duplicates keep the least description, independent of record order
        if key not in entries or repr(norm.desc) < repr(entries[key][0].desc):
            entries[key] = norm, op
    return [entries[key] for key in sorted(entries)]

class OptabEntry(NamedTuple):
    mnemonic: str
    ytab: int
    form: Tuple[Token, ...]
    desc: EncodingDesc
    op: Tuple[OpByte, ...]

class Tables(NamedTuple):
    ytabs: Tuple[YtabGroup, ...]
    optab: dict # mnemonic -> tuple of OptabEntry, in sorted key order
    stats: dict

def build_tables(records, exclude_vendors=("AMD",), exclude_isas=()):
    stats = {"records": 0, "skipped": 0}
    normalized = []
    for record in records:
        stats["records"] += 1
        norm = normalize(record)
        if norm is None:
            stats["skipped"] += 1
        else:
            normalized.append(norm)
    stats["excluded"] = sum(is_excluded(norm.desc, exclude_vendors, exclude_isas)
                            for norm in normalized)

    interner = YtabInterner()
    optab = defaultdict(list)
    for norm, op in build_optab(normalized, exclude_vendors, exclude_isas):
        ytab = interner.intern(norm.form)
        optab[norm.mnemonic].append(OptabEntry(norm.mnemonic, ytab, norm.form, norm.desc, op))

    ytabs = interner.groups()
    stats["mnemonics"] = len(optab)
    stats["entries"] = sum(len(entries) for entries in optab.values())
    stats["groups"] = len(ytabs)
    return Tables(ytabs, {mnem: tuple(optab[mnem]) for mnem in sorted(optab)}, stats)

HEADER = "// Code generated by avxgen. DO NOT EDIT.\n\npackage x86\n"

def format_ytab(row):
    return f"{{zcase: {row.zcase}, zoffset: {row.zoffset}, args: argList{{{', '.join(row.args)}}}}},"

def format_entry(entry):
    op = ", ".join(b.text for b in entry.op)
    return (f"{{as: A{entry.mnemonic}, ytab: {ytab_name(entry.ytab)}, "
            f"prefix: Pavx, op: opBytes{{{op}}}}},")

def write_tables(tables, out=None):
    lines = [HEADER]
    for group in tables.ytabs:
        lines.append(f"var {group.name} = []ytab{{")
        lines.extend(f"\t{format_ytab(row)}" for row in group.rows)
        lines.append("}\n")
    lines.append("var avxOptab = [...]Optab{")
    for mnem in sorted(tables.optab):
        lines.extend(f"\t{format_entry(entry)}" for entry in tables.optab[mnem])
    lines.append("}")
    res = "\n".join(lines) + "\n"
    if out is not None:
        out.write(res)
    return res

def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--with-amd", action="store_true")
    parser.add_argument("--with-undoc", action="store_true")
    parser.add_argument("--exclude-isa", dest="exclude_isas", action="append", default=[])
    parser.add_argument("--stats", action="store_true")
    parser.add_argument("table")
    parser.add_argument("output", type=argparse.FileType('w'))
    args = parser.parse_args(argv)

    db = open_database(args.table)
    tables = build_tables(db.records(args.with_undoc),
                          exclude_vendors=() if args.with_amd else ("AMD",),
                          exclude_isas=tuple(args.exclude_isas))
    write_tables(tables, args.output)
    args.output.flush()

    if args.stats:
        stats = tables.stats
        print(f"Table stats: Records -- {stats['records']} ({stats['skipped']} skipped, "
              f"{stats['excluded']} excluded); Optab -- {stats['mnemonics']} mnemonics, "
              f"{stats['entries']} entries; Ytab -- {stats['groups']} groups")

if __name__ == "__main__":
    main()
