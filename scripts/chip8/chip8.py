# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# This module is the interpreter core only: machine state, decode, execute
# and the timer driver. Window, keyboard, audio and wall-clock pacing live
# in chip8_frontend.py.


import os
import random
from enum import Enum
from functools import wraps
from typing import NamedTuple


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

MEMORY_SIZE = 4096
FONT_START_ADDRESS = 0x000
FONT_GLYPH_SIZE = 5
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS     # 3584 bytes
NUM_REGISTERS = 16
FLAG_REGISTER = 0xF
STACK_SIZE = 16
NUM_KEYS = 16
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
SPRITE_WIDTH = 8
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every error the interpreter reports to its caller"""


class RomTooLargeError(Chip8Error, ValueError):
    def __init__(self, size):
        self.size = size
        super().__init__(f"ROM of {size} bytes does not fit in memory (at most {MAX_ROM_SIZE} bytes)")


class UnsupportedInstructionError(Chip8Error):
    def __init__(self, word, address=None):
        self.word = word
        self.address = address
        where = "" if address is None else f" at 0x{address:04X}"
        super().__init__(f"Unsupported instruction 0x{word:04X}{where}")


class BoundsError(Chip8Error, IndexError):
    """an access outside memory, keypad or stack limits"""


class StackOverflowError(BoundsError):
    pass


class StackUnderflowError(BoundsError):
    pass


# ******************** DECODE SECTION
class Op(Enum):
    NOP = "0000"
    CLS = "00E0"
    RET = "00EE"
    JP = "1nnn"
    CALL = "2nnn"
    SE_BYTE = "3xnn"
    SNE_BYTE = "4xnn"
    SE_REG = "5xy0"
    LD_BYTE = "6xnn"
    ADD_BYTE = "7xnn"
    LD_REG = "8xy0"
    OR = "8xy1"
    AND = "8xy2"
    XOR = "8xy3"
    ADD_REG = "8xy4"
    SUB = "8xy5"
    SHR = "8xy6"
    SUBN = "8xy7"
    SHL = "8xyE"
    SNE_REG = "9xy0"
    LD_I = "Annn"
    JP_V0 = "Bnnn"
    RND = "Cxnn"
    DRW = "Dxyn"
    SKP = "Ex9E"
    SKNP = "ExA1"
    LD_VX_DT = "Fx07"
    LD_VX_K = "Fx0A"
    LD_DT_VX = "Fx15"
    LD_ST_VX = "Fx18"
    ADD_I = "Fx1E"
    LD_F = "Fx29"
    LD_B = "Fx33"
    LD_MEM_VX = "Fx55"
    LD_VX_MEM = "Fx65"


# WATCH OUT: a word is matched against the masks in this order, the first hit wins
OPCODE_MASKS = {
    0xFFFF: {0x0000: Op.NOP, 0x00E0: Op.CLS, 0x00EE: Op.RET},
    0xF0FF: {
        0xE09E: Op.SKP, 0xE0A1: Op.SKNP,
        0xF007: Op.LD_VX_DT, 0xF00A: Op.LD_VX_K, 0xF015: Op.LD_DT_VX, 0xF018: Op.LD_ST_VX,
        0xF01E: Op.ADD_I, 0xF029: Op.LD_F, 0xF033: Op.LD_B, 0xF055: Op.LD_MEM_VX, 0xF065: Op.LD_VX_MEM,
    },
    0xF00F: {
        0x5000: Op.SE_REG,
        0x8000: Op.LD_REG, 0x8001: Op.OR, 0x8002: Op.AND, 0x8003: Op.XOR, 0x8004: Op.ADD_REG,
        0x8005: Op.SUB, 0x8006: Op.SHR, 0x8007: Op.SUBN, 0x800E: Op.SHL,
        0x9000: Op.SNE_REG,
    },
    0xF000: {
        0x1000: Op.JP, 0x2000: Op.CALL, 0x3000: Op.SE_BYTE, 0x4000: Op.SNE_BYTE,
        0x6000: Op.LD_BYTE, 0x7000: Op.ADD_BYTE, 0xA000: Op.LD_I, 0xB000: Op.JP_V0,
        0xC000: Op.RND, 0xD000: Op.DRW,
    },
}


class Instruction(NamedTuple):
    """a decoded instruction word: the operation plus every operand field"""
    op: Op
    word: int
    x: int      # second nibble
    y: int      # third nibble
    n: int      # lowest nibble
    nn: int     # lowest byte
    nnn: int    # lowest 12 bits


def decode(word, address=None):
    """decode a 16-bit instruction word, raise UnsupportedInstructionError if nothing matches"""
    word &= 0xFFFF
    for mask, ops in OPCODE_MASKS.items():
        op = ops.get(word & mask)
        if op is not None:
            return Instruction(
                op=op,
                word=word,
                x=(word & 0x0F00) >> 8,
                y=(word & 0x00F0) >> 4,
                n=word & 0x000F,
                nn=word & 0x00FF,
                nnn=word & 0x0FFF,
            )
    raise UnsupportedInstructionError(word, address)


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to print out the ASM of the instruction being executed"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(self, ins):
            mem_addr = (self.pc - 2) & 0xFFFF     # pc has already moved past the executed word
            if DEBUG: print(f"mem_addr: 0x{mem_addr:04x}    opcode: 0x{ins.word:04x}    instruction: " + msg.format(**ins._asdict()))
            return fn(self, ins)
        return wrapper_fn
    return decorator


# ******************** MEMORY SECTION
# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    def __len__(self):
        return len(self.inner)

    def _check(self, address, count=1):
        if address < 0 or address + count > len(self.inner):
            raise BoundsError(f"Memory access of {count} byte(s) at 0x{address:04X} is outside the {len(self.inner)} bytes of RAM")

    def __getitem__(self, address):
        self._check(address)
        return self.inner[address]

    def __setitem__(self, address, value):
        self._check(address)
        self.inner[address] = value & 0xFF

    def read(self, address, count):
        """return `count` bytes starting at `address`, the whole range is validated first"""
        self._check(address, count)
        return bytes(self.inner[address:address+count])

    def write(self, address, values):
        """write every byte of `values` starting at `address`, nothing is written if the range overflows"""
        self._check(address, len(values))
        self.inner[address:address+len(values)] = bytes(values)

    def load_rom(self, rom):
        """copy a program image at ROM_START_ADDRESS, raise RomTooLargeError if it doesn't fit"""
        if len(rom) > MAX_ROM_SIZE:
            raise RomTooLargeError(len(rom))
        self.write(ROM_START_ADDRESS, rom)
        if DEBUG: print(f"A ROM of {len(rom)} bytes has been loaded successfully")


# ********** FIXED ARRAY OF 16 RETURN ADDRESSES PLUS A STACK POINTER
class Stack:
    def __init__(self):
        self.addr_list = [0] * STACK_SIZE
        self.sp = 0

    def __len__(self):
        return self.sp

    def __str__(self):
        return str(self.addr_list[:self.sp])

    def append(self, address):
        if self.sp >= STACK_SIZE:
            raise StackOverflowError(f"The CHIP-8 stack can contain at most {STACK_SIZE} addresses. Limit exceeded")
        self.addr_list[self.sp] = address
        self.sp += 1

    def pop(self):
        if self.sp == 0:
            raise StackUnderflowError("Return with an empty CHIP-8 stack")
        self.sp -= 1
        return self.addr_list[self.sp]


# ******************** I/O SECTION
class Framebuffer:
    """64x32 monochrome pixels stored row-major, True means ON"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [False] * h * w

    def read_pixel(self, x, y):
        if not (0 <= x < self.w and 0 <= y < self.h):
            raise BoundsError(f"Pixel ({x}, {y}) is outside the {self.w}x{self.h} screen")
        return self.buffer[y * self.w + x]

    def flip_pixel(self, x, y):
        """XOR a pixel (coordinates wrap around the screen edges) and return its previous state"""
        idx = (y % self.h) * self.w + (x % self.w)
        previous = self.buffer[idx]
        self.buffer[idx] = not previous
        return previous

    def clear(self):
        self.buffer = [False] * self.h * self.w

    def snapshot(self):
        return tuple(self.buffer)


class Keypad:
    """state of the 16 hex keys, written by the embedder and read by the interpreter"""
    def __init__(self):
        self.keys = [False] * NUM_KEYS

    def _check(self, key):
        if not 0 <= key < NUM_KEYS:
            raise BoundsError(f"Key 0x{key:X} does not exist, the keypad has {NUM_KEYS} keys")

    def __getitem__(self, key):
        self._check(key)
        return self.keys[key]

    def __setitem__(self, key, pressed):
        self._check(key)
        self.keys[key] = bool(pressed)

    def untouched(self):
        return not any(self.keys)

    def first(self):
        """lowest index among the keys currently held down, None if none is"""
        for key, pressed in enumerate(self.keys):
            if pressed:
                return key
        return None


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rng=None, on_beep=None):
        """
        rng: any object exposing randint(a, b), used by RND (defaults to a private random.Random)
        on_beep: zero-argument callable invoked when the sound timer runs out
        """
        self.rng = rng if rng is not None else random.Random()
        self.on_beep = on_beep
        self.instructions = {
            Op.NOP: self._nop,
            Op.CLS: self._clear_screen,
            Op.RET: self._return,
            Op.JP: self._jump,
            Op.CALL: self._call_addr,
            Op.SE_BYTE: self._skip_if_eq,
            Op.SNE_BYTE: self._skip_if_not_eq,
            Op.SE_REG: self._skip_if_eq_regs,
            Op.LD_BYTE: self._set_vx,
            Op.ADD_BYTE: self._add_to_vx,
            Op.LD_REG: self._set_vx_to_vy,
            Op.OR: self._set_vx_or_vy,
            Op.AND: self._set_vx_and_vy,
            Op.XOR: self._set_vx_xor_vy,
            Op.ADD_REG: self._add_vx_vy,
            Op.SUB: self._sub_vx_vy,
            Op.SHR: self._shr,
            Op.SUBN: self._subn_vx_vy,
            Op.SHL: self._shl,
            Op.SNE_REG: self._skip_if_not_eq_regs,
            Op.LD_I: self._set_idx,
            Op.JP_V0: self._jump_plus,
            Op.RND: self._random_byte_and,
            Op.DRW: self._to_screen,
            Op.SKP: self._skip_if_pressed,
            Op.SKNP: self._skip_if_not_pressed,
            Op.LD_VX_DT: self._set_vx_dt,
            Op.LD_VX_K: self._wait_keypress,
            Op.LD_DT_VX: self._set_dt_vx,
            Op.LD_ST_VX: self._set_st,
            Op.ADD_I: self._add_to_idx,
            Op.LD_F: self._select_char,
            Op.LD_B: self._bcd_repr,
            Op.LD_MEM_VX: self._store_vregs,
            Op.LD_VX_MEM: self._load_vregs,
        }
        self.reset()

    def reset(self):
        """bring every piece of state back to power-on values, the loaded ROM is wiped as well"""
        self.mem = Memory()
        self.stack = Stack()
        self.screen = Framebuffer()
        self.keypad = Keypad()
        self.v_regs = [0] * NUM_REGISTERS
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # address register used by the memory and sprite instructions
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.draw = False

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        timers = f"DELAY_TIMER:{self.dt} | SOUND_TIMER:{self.st}"
        stack = f"STACK:{self.stack} | SP:{self.stack.sp}"
        keypad = f"KEYPAD:{[k for k in range(NUM_KEYS) if self.keypad.keys[k]]}"
        flags = f"DRAW: {self.draw}"
        return f"{registers}\n{timers}\n{stack}\n{keypad}\n{flags}"

    # ********** EMBEDDER INTERFACE
    @property
    def sp(self):
        return self.stack.sp

    def load(self, data):
        """copy a program image into memory at 0x200"""
        self.mem.load_rom(data)

    def keypress(self, key, pressed):
        self.keypad[key] = pressed

    set_key = keypress

    def display(self):
        """read-only snapshot of the framebuffer: a tuple of 64*32 booleans, row-major"""
        return self.screen.snapshot()

    get_display = display

    def pixel(self, x, y):
        return self.screen.read_pixel(x, y)

    def fetch(self):
        """read the big-endian word at pc and move pc past it"""
        hi, lo = self.mem.read(self.pc, 2)
        self._goto_next_instruction()
        return hi << 8 | lo

    def step(self):
        """emulate one machine cycle: fetch, decode and execute exactly one instruction"""
        self.draw = False
        address = self.pc
        instruction = decode(self.fetch(), address)
        self.instructions[instruction.op](instruction)
        return instruction

    cycle = step

    def tick_timers(self):
        """count both timers down by one, meant to be called 60 times per second"""
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            if self.st == 1 and self.on_beep is not None:
                self.on_beep()
            self.st -= 1

    # ********** INSTRUCTIONS
    def _goto_next_instruction(self):
        self.pc = (self.pc + 0x2) & 0xFFFF

    def _set_flag(self, value):
        self.v_regs[FLAG_REGISTER] = value

    @asm("NOP")
    def _nop(self, ins):
        pass

    @asm("CLS")
    def _clear_screen(self, ins):
        self.screen.clear()
        self.draw = True

    @asm("RET")
    def _return(self, ins):
        """return from a subroutine"""
        self.pc = self.stack.pop()

    @asm("JP 0x{nnn:03x}")
    def _jump(self, ins):
        self.pc = ins.nnn

    @asm("CALL 0x{nnn:03x}")
    def _call_addr(self, ins):
        self.stack.append(self.pc)
        self.pc = ins.nnn

    @asm("SE V{x:X}, {nn}")
    def _skip_if_eq(self, ins):
        if self.v_regs[ins.x] == ins.nn:
            self._goto_next_instruction()

    @asm("SNE V{x:X}, {nn}")
    def _skip_if_not_eq(self, ins):
        if self.v_regs[ins.x] != ins.nn:
            self._goto_next_instruction()

    @asm("SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, ins):
        if self.v_regs[ins.x] == self.v_regs[ins.y]:
            self._goto_next_instruction()

    @asm("SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, ins):
        if self.v_regs[ins.x] != self.v_regs[ins.y]:
            self._goto_next_instruction()

    @asm("LD V{x:X}, {nn}")
    def _set_vx(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.nn

    @asm("ADD V{x:X}, {nn}")
    def _add_to_vx(self, ins):
        """add to the value already present in Vx, VF is left alone"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.nn) & 0xFF

    @asm("LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, ins):
        self.v_regs[ins.x] = self.v_regs[ins.y]

    @asm("OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, ins):
        self.v_regs[ins.x] |= self.v_regs[ins.y]

    @asm("AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, ins):
        self.v_regs[ins.x] &= self.v_regs[ins.y]

    @asm("XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, ins):
        self.v_regs[ins.x] ^= self.v_regs[ins.y]

    # the flag is written after the result, so with X == F the flag is what remains in VF
    @asm("ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, ins):
        """set Vx = Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        self.v_regs[ins.x] = total & 0xFF     # keep only the lowest 8 bits
        self._set_flag(1 if total > 0xFF else 0)

    @asm("SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, ins):
        """set Vx = Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self._set_flag(0 if vy > vx else 1)

    @asm("SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, ins):
        """set Vx = Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self._set_flag(0 if vx > vy else 1)

    @asm("SHR V{x:X}")
    def _shr(self, ins):
        """shift Vx itself right by one, VF = bit shifted out"""
        lsb = self.v_regs[ins.x] & 0x1
        self.v_regs[ins.x] >>= 1
        self._set_flag(lsb)

    @asm("SHL V{x:X}")
    def _shl(self, ins):
        """shift Vx itself left by one, VF = bit shifted out"""
        msb = (self.v_regs[ins.x] & 0x80) >> 7
        self.v_regs[ins.x] = (self.v_regs[ins.x] << 1) & 0xFF
        self._set_flag(msb)

    @asm("LD I, 0x{nnn:03x}")
    def _set_idx(self, ins):
        self.idx = ins.nnn

    @asm("JP V0, 0x{nnn:03x}")
    def _jump_plus(self, ins):
        self.pc = self.v_regs[0x0] + ins.nnn

    @asm("RND V{x:X}, 0x{nn:02x}")
    def _random_byte_and(self, ins):
        self.v_regs[ins.x] = self.rng.randint(0, 255) & ins.nn

    @asm("DRW V{x:X}, V{y:X}, {n}")
    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = self.v_regs[ins.x], self.v_regs[ins.y]
        sprite = self.mem.read(self.idx, ins.n)
        collision = False
        for row, sprite_byte in enumerate(sprite):
            for col in range(SPRITE_WIDTH):
                if sprite_byte & (0x80 >> col):
                    # a pixel that was ON and gets flipped again is erased: that's a collision
                    collision |= self.screen.flip_pixel(x + col, y + row)
        self._set_flag(1 if collision else 0)
        self.draw = True

    @asm("SKP V{x:X}")
    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key whose index is stored in Vx is pressed"""
        if self.keypad[self.v_regs[ins.x]]:
            self._goto_next_instruction()

    @asm("SKNP V{x:X}")
    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key whose index is stored in Vx is NOT pressed"""
        if not self.keypad[self.v_regs[ins.x]]:
            self._goto_next_instruction()

    @asm("LD V{x:X}, DT")
    def _set_vx_dt(self, ins):
        self.v_regs[ins.x] = self.dt

    @asm("LD V{x:X}, K")
    def _wait_keypress(self, ins):
        """wait for a key press and store its index in Vx"""
        if self.keypad.untouched():
            self.pc -= 0x2      # stay on the same instruction until a key is pressed
        else:
            self.v_regs[ins.x] = self.keypad.first()

    @asm("LD DT, V{x:X}")
    def _set_dt_vx(self, ins):
        self.dt = self.v_regs[ins.x]

    @asm("LD ST, V{x:X}")
    def _set_st(self, ins):
        self.st = self.v_regs[ins.x]

    @asm("ADD I, V{x:X}")
    def _add_to_idx(self, ins):
        self.idx = (self.idx + self.v_regs[ins.x]) & 0xFFFF

    @asm("LD F, V{x:X}")
    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        self.idx = FONT_START_ADDRESS + self.v_regs[ins.x] * FONT_GLYPH_SIZE

    @asm("LD B, V{x:X}")
    def _bcd_repr(self, ins):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        value = self.v_regs[ins.x]
        self.mem.write(self.idx, [value // 100, (value // 10) % 10, value % 10])

    @asm("LD [I], V{x:X}")
    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        self.mem.write(self.idx, self.v_regs[:ins.x+1])

    @asm("LD V{x:X}, [I]")
    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        self.v_regs[:ins.x+1] = list(self.mem.read(self.idx, ins.x + 1))
