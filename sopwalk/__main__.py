from sopwalk.cli import main

main()
