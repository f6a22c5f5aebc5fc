from kindred.server import main

main()
