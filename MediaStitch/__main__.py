# 18.10.26

from MediaStitch.cli.run import main


if __name__ == "__main__":
    main()
