from tsunami.cli import main

raise SystemExit(main())
