# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Launcher used by the desktop shell to start the relay server as a child process."""

import os
import sys

from agentsuite.main import main as server_main


def main():
    # Determine if we are running in a PyInstaller bundle
    if getattr(sys, "frozen", False):
        # data/ and resources/ live next to the executable unless the desktop
        # shell asks us to stay in its working directory
        if "--no-chdir" not in sys.argv:
            os.chdir(os.path.dirname(sys.executable))

    # Ensure necessary directories exist
    os.makedirs("data/uploads", exist_ok=True)
    os.makedirs("data/logs", exist_ok=True)
    os.makedirs("resources/config", exist_ok=True)

    argv = [a for a in sys.argv[1:] if a != "--no-chdir"]
    server_main(argv)


if __name__ == "__main__":
    main()
