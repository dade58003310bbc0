from uniongate_monitor.cli import main

main()
