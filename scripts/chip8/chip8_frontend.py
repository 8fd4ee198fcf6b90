# pygame shell around the interpreter core in chip8.py
#
# it owns everything the core leaves out: reading the ROM file, the window,
# the keyboard, the 60Hz timer cadence and the beep


import argparse
import sys

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_0, K_1, K_2, K_3,
    K_4, K_5, K_6, K_7,
    K_8, K_9, K_a, K_b,
    K_c, K_d, K_e, K_f,
)

from chip8 import Chip8, Chip8Error, SCREEN_WIDTH, SCREEN_HEIGHT


# ******************** STATIC SECTION
KEY_MAPPINGS = {
    K_0: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_4: 0x4,
    K_5: 0x5,
    K_6: 0x6,
    K_7: 0x7,
    K_8: 0x8,
    K_9: 0x9,
    K_a: 0xA,
    K_b: 0xB,
    K_c: 0xC,
    K_d: 0xD,
    K_e: 0xE,
    K_f: 0xF,
}

FRAMES_PER_SECOND = 60          # delay and sound timers count down at this rate
INSTRUCTIONS_PER_FRAME = 10
SCALE = 15
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-s", "--speed", type=int, default=INSTRUCTIONS_PER_FRAME,
                        help=f"instructions executed per frame, {FRAMES_PER_SECOND} frames per second (default: %(default)s)")
    parser.add_argument("--scale", type=int, default=SCALE, help="window pixels per CHIP-8 pixel (default: %(default)s)")
    return parser.parse_args(argv)

def read_rom(path):
    with open(path, mode='rb') as f:
        return f.read()

def beep():
    print("BEEP")


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self, framebuffer):
        """paint a row-major framebuffer snapshot, the change shows up at the next refresh"""
        self.surface.fill(self.background)
        for i, on in enumerate(framebuffer):
            if on:
                x, y = i % self.w, i // self.w
                pygame.draw.rect(
                    self.surface,
                    self.foreground,
                    (x * self.scale, y * self.scale, self.scale, self.scale)
                )

    @staticmethod
    def refresh():
        pygame.display.flip()


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    rom = read_rom(args.file)
    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(args.file))
    s = Screen(s=args.scale)
    # CPU
    chip = Chip8(on_beep=beep)
    # emulation loop
    run = True
    try:
        chip.load(rom)
        while run:
            clock.tick(FRAMES_PER_SECOND)
            # process user input
            # loop throught the event queue
            for event in pygame.event.get():
                if event.type == pygame.KEYDOWN:
                    if event.key == pygame.K_ESCAPE:
                        run = False
                    elif event.key == pygame.K_BACKSPACE:
                        chip.reset()
                        chip.load(rom)
                    elif event.key in KEY_MAPPINGS:
                        chip.keypress(KEY_MAPPINGS[event.key], True)
                elif event.type == pygame.KEYUP:
                    if event.key in KEY_MAPPINGS:
                        chip.keypress(KEY_MAPPINGS[event.key], False)
                elif event.type == pygame.QUIT:
                    run = False
            # the draw flag only covers the last step, so remember it across the frame
            dirty = False
            for _ in range(args.speed):
                chip.step()
                dirty |= chip.draw
            chip.tick_timers()
            if dirty:
                s.render(chip.display())
                s.refresh()
    except Chip8Error as err:
        sys.exit(f"********** THE EMULATOR CRASHED: {err}\n********** WITH THE FOLLOWING STATE\n{chip}")
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
