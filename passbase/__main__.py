from passbase.cli import main

main()
