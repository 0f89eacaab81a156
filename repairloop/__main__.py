from repairloop.cli import main

main()
