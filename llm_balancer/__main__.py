from llm_balancer.cli import main

raise SystemExit(main())
