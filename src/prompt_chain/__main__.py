from prompt_chain.cli import main

main()
