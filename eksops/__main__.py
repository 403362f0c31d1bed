from eksops.cli import main

main()
