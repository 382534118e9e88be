from vulnera_launcher.main import main

main()
