"""Run the botwatch monitor."""

from botwatch.__main__ import main

if __name__ == "__main__":
    main()
