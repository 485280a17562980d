from node_planner.main import main

main()
