from buildgov.cli import main

main()
